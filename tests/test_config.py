"""
Tests for configuration loading.

Tests cover:
- Defaults
- phaseflow.yaml overrides
- PHASEFLOW_* environment overrides
- Validation
"""

from phaseflow.config import ConfigManager, PhaseflowConfig


class TestConfigLoading:
    """Load priority: environment > file > defaults."""

    def test_defaults_without_file(self, tmp_path):
        manager = ConfigManager(tmp_path / "phaseflow.yaml", environ={})
        config = manager.config

        assert config.state.state_dir == ".phaseflow"
        assert config.checkpoint.progress_threshold == 25
        assert config.checkpoint.interval_minutes == 30
        assert config.retry.max_retries == 3
        assert config.retry.backoff_base == 2.0
        assert config.gates.default_timeout_minutes == 30

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "phaseflow.yaml"
        path.write_text(
            "checkpoint:\n"
            "  progress_threshold: 10\n"
            "retry:\n"
            "  max_retries: 5\n"
            "workflows_file: extra.yaml\n"
        )
        config = ConfigManager(path, environ={}).config

        assert config.checkpoint.progress_threshold == 10
        assert config.checkpoint.interval_minutes == 30
        assert config.retry.max_retries == 5
        assert config.workflows_file == "extra.yaml"

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "phaseflow.yaml"
        path.write_text("retry:\n  max_retries: 5\n")
        environ = {
            "PHASEFLOW_RETRY_MAX_RETRIES": "7",
            "PHASEFLOW_RETRY_BACKOFF_BASE": "3",
            "PHASEFLOW_STATE_DIR": "custom-state",
        }
        config = ConfigManager(path, environ=environ).config

        assert config.retry.max_retries == 7
        assert config.retry.backoff_base == 3.0
        assert config.state.state_dir == "custom-state"

    def test_bad_env_value_is_reported(self, tmp_path):
        manager = ConfigManager(
            tmp_path / "phaseflow.yaml",
            environ={"PHASEFLOW_RETRY_MAX_RETRIES": "many"},
        )
        assert manager.config.retry.max_retries == 3
        ok, errors = manager.validate()
        assert not ok
        assert any("PHASEFLOW_RETRY_MAX_RETRIES" in e for e in errors)

    def test_unknown_key_in_file_is_reported(self, tmp_path):
        path = tmp_path / "phaseflow.yaml"
        path.write_text("retry:\n  attempts: 4\n")
        manager = ConfigManager(path, environ={})
        assert manager.config.retry.max_retries == 3
        assert manager.load_errors

    def test_retry_policy_from_config(self, tmp_path):
        manager = ConfigManager(
            tmp_path / "phaseflow.yaml",
            environ={"PHASEFLOW_RETRY_MAX_DELAY_SECONDS": "5"},
        )
        policy = manager.config.retry.to_policy()
        assert policy.delay_for(0) == 1
        assert policy.delay_for(2) == 4
        assert policy.delay_for(10) == 5


class TestConfigValidation:
    """ConfigManager.validate()"""

    def test_defaults_are_valid(self, tmp_path):
        ok, errors = ConfigManager(tmp_path / "phaseflow.yaml", environ={}).validate()
        assert ok
        assert errors == []

    def test_invalid_values(self, tmp_path):
        manager = ConfigManager(tmp_path / "phaseflow.yaml", environ={})
        manager._config.checkpoint.progress_threshold = 0
        manager._config.logging.level = "CHATTY"
        ok, errors = manager.validate()
        assert not ok
        assert any("progress threshold" in e for e in errors)
        assert any("Logging level" in e for e in errors)

    def test_missing_workflows_file(self, tmp_path):
        manager = ConfigManager(tmp_path / "phaseflow.yaml", environ={})
        manager._config.workflows_file = "missing.yaml"
        ok, errors = manager.validate()
        assert not ok
        assert "Workflows file not found: missing.yaml" in errors

    def test_invalid_file_values(self, tmp_path):
        path = tmp_path / "phaseflow.yaml"
        path.write_text("checkpoint:\n  max_auto_checkpoints: 0\ngates:\n  default_timeout_minutes: 0\n")
        manager = ConfigManager(path, environ={})

        ok, errors = manager.validate()

        assert not ok
        assert "Max automatic checkpoints must be at least 1" in errors
        assert "Gate default timeout must be at least 1 minute" in errors
        assert isinstance(manager.config, PhaseflowConfig)
