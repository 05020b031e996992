"""Path resolution for phaseflow state files.

All knowledge of the on-disk layout lives here so the state store can be
swapped without touching the state machine.

Directory structure:
    .phaseflow/
    ├── state.json          # The live workflow instance
    ├── checkpoints/        # auto-<trigger>-<ts>.json and named snapshots
    ├── history/            # Archived completed/reset instances
    ├── backups/            # Safety backups written before reset/import
    ├── state-backups/      # Rolling copies of state.json taken before each save
    ├── error-logs/         # error-<ts>-<id>.json plus workflow-errors.log
    └── locks/              # state.lock
"""

from pathlib import Path
from typing import Optional, Union


class WorkflowPaths:
    """Centralized path resolution for one state directory"""

    def __init__(self, base_dir: Optional[Path] = None, state_dir: Union[str, Path] = ".phaseflow"):
        """Initialize path resolver.

        Args:
            base_dir: Project directory. Defaults to the current directory.
            state_dir: State directory, relative to base_dir unless absolute
        """
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.root = self.base_dir / state_dir

    def state_file(self) -> Path:
        return self.root / "state.json"

    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    def checkpoint_file(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir() / f"{checkpoint_id}.json"

    def history_dir(self) -> Path:
        return self.root / "history"

    def backups_dir(self) -> Path:
        return self.root / "backups"

    def state_backups_dir(self) -> Path:
        return self.root / "state-backups"

    def error_logs_dir(self) -> Path:
        return self.root / "error-logs"

    def error_line_log(self) -> Path:
        """Append-only one-line-per-incident log."""
        return self.error_logs_dir() / "workflow-errors.log"

    def locks_dir(self) -> Path:
        return self.root / "locks"

    def state_lock(self) -> Path:
        return self.locks_dir() / "state.lock"
