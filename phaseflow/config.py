"""
Configuration System

Manages phaseflow configuration from multiple sources:
1. Default values
2. Configuration file (phaseflow.yaml)
3. Environment variables (highest priority)
"""

from typing import Any, Dict, Optional
from pathlib import Path
import logging
import os
import yaml
from dataclasses import dataclass, field, fields

from .errors import RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "PHASEFLOW"
CONFIG_FILENAME = "phaseflow.yaml"


@dataclass
class StateConfig:
    """State storage configuration"""
    state_dir: str = ".phaseflow"
    rolling_backups: int = 10
    lock_timeout_seconds: float = 10.0


@dataclass
class CheckpointConfig:
    """Automatic checkpoint configuration"""
    progress_threshold: int = 25  # percentage points
    interval_minutes: int = 30
    max_auto_checkpoints: int = 10


@dataclass
class RetryConfig:
    """Retry configuration"""
    max_retries: int = 3
    backoff_base: float = 2.0
    max_delay_seconds: float = 300.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            max_delay_seconds=self.max_delay_seconds,
        )


@dataclass
class GateConfig:
    """Approval gate configuration"""
    default_timeout_minutes: int = 30


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class PhaseflowConfig:
    """Complete phaseflow configuration"""
    state: StateConfig = field(default_factory=StateConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    gates: GateConfig = field(default_factory=GateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    workflows_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseflowConfig":
        """Create configuration from dictionary"""
        config = cls()

        if "state" in data:
            config.state = StateConfig(**data["state"])
        if "checkpoint" in data:
            config.checkpoint = CheckpointConfig(**data["checkpoint"])
        if "retry" in data:
            config.retry = RetryConfig(**data["retry"])
        if "gates" in data:
            config.gates = GateConfig(**data["gates"])
        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])
        if "workflows_file" in data:
            config.workflows_file = data["workflows_file"]

        return config


SECTIONS = ("state", "checkpoint", "retry", "gates", "logging")


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_file = Path(config_file) if config_file else Path(CONFIG_FILENAME)
        self._environ = os.environ if environ is None else environ
        self.load_errors: list[str] = []
        self._config = self._load_config()

    def _load_config(self) -> PhaseflowConfig:
        config = PhaseflowConfig()
        self.load_errors = []

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
                if file_data:
                    config = PhaseflowConfig.from_dict(file_data)
            except (OSError, yaml.YAMLError, TypeError) as e:
                message = f"Failed to load config file {self.config_file}: {e}"
                logger.warning(message)
                self.load_errors.append(message)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: PhaseflowConfig) -> PhaseflowConfig:
        """
        Apply environment variable overrides

        Environment variables format: PHASEFLOW_<SECTION>_<KEY>
        Example: PHASEFLOW_RETRY_MAX_RETRIES=5
        """
        for section_name in SECTIONS:
            section = getattr(config, section_name)
            for f in fields(section):
                env_name = f"{ENV_PREFIX}_{section_name}_{f.name}".upper()
                raw = self._environ.get(env_name)
                if raw is None:
                    continue
                current = getattr(section, f.name)
                try:
                    setattr(section, f.name, _coerce(raw, current))
                except ValueError:
                    message = f"Ignoring {env_name}={raw!r}: expected {type(current).__name__}"
                    logger.warning(message)
                    self.load_errors.append(message)

        # Short aliases
        if state_dir := self._environ.get(f"{ENV_PREFIX}_STATE_DIR"):
            config.state.state_dir = state_dir
        if log_level := self._environ.get(f"{ENV_PREFIX}_LOG_LEVEL"):
            config.logging.level = log_level
        if workflows_file := self._environ.get(f"{ENV_PREFIX}_WORKFLOWS_FILE"):
            config.workflows_file = workflows_file

        return config

    @property
    def config(self) -> PhaseflowConfig:
        return self._config

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = list(self.load_errors)
        cfg = self._config

        if not cfg.state.state_dir:
            errors.append("State directory must not be empty")
        if cfg.state.rolling_backups < 0:
            errors.append("Rolling backups must be non-negative")
        if cfg.state.lock_timeout_seconds <= 0:
            errors.append("Lock timeout must be positive")

        if not 0 < cfg.checkpoint.progress_threshold <= 100:
            errors.append("Checkpoint progress threshold must be between 1 and 100")
        if cfg.checkpoint.interval_minutes < 1:
            errors.append("Checkpoint interval must be at least 1 minute")
        if cfg.checkpoint.max_auto_checkpoints < 1:
            errors.append("Max automatic checkpoints must be at least 1")

        if cfg.retry.max_retries < 0:
            errors.append("Retry max retries must be non-negative")
        if cfg.retry.backoff_base < 1:
            errors.append("Retry backoff base must be at least 1")
        if cfg.retry.max_delay_seconds < 0:
            errors.append("Retry max delay must be non-negative")

        if cfg.gates.default_timeout_minutes < 1:
            errors.append("Gate default timeout must be at least 1 minute")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if cfg.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")

        if cfg.workflows_file and not self.resolve(cfg.workflows_file).exists():
            errors.append(f"Workflows file not found: {cfg.workflows_file}")

        return len(errors) == 0, errors

    def resolve(self, path: str) -> Path:
        """Resolve a configured path relative to the config file directory."""
        return self.config_file.parent / path
