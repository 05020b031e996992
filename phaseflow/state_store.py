"""
State persistence for workflow instances.

A StateStore holds exactly one live workflow instance plus its checkpoints,
archived history, safety backups and error records. FileStateStore keeps
them under a state directory (see path_resolver for the layout) using atomic,
checksummed writes. InMemoryStateStore is a drop-in for tests.
"""

import hashlib
import json
import logging
import os
import re
import secrets
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from .errors import CheckpointNotFoundError, FileAccessError, StateCorruptionError
from .locking import FileLock, LockTimeoutError
from .path_resolver import WorkflowPaths
from .schema import CheckpointData, ErrorContext, ErrorRecord, RecoveryOutcome, WorkflowState

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0"

# Strategy name recorded when load() repairs the live state by itself
BACKUP_RECOVERY = "restore_state_backup"

# Checkpoint and backup names end up as file names
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def file_stamp(moment: datetime) -> str:
    """Timestamp usable in file names, sortable as text."""
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def compute_checksum(data: dict) -> str:
    """
    Checksum for integrity verification.

    Excludes the metadata fields (_checksum, _updated_at) and uses SHA-256
    truncated to 32 hex characters.
    """
    excluded = {'_checksum', '_updated_at'}
    data_copy = {k: v for k, v in data.items() if k not in excluded}
    content = json.dumps(data_copy, sort_keys=True)
    return hashlib.sha256(content.encode()).hexdigest()[:32]


def validate_name(name: str) -> str:
    if not _SAFE_NAME.match(name or ""):
        raise ValueError(
            f"Invalid name {name!r}: use letters, digits, '.', '_' or '-' "
            f"(must start with a letter or digit)"
        )
    return name


class StateStore(ABC):
    """
    Persistence interface used by the orchestrator.

    All file-layout knowledge lives behind this interface.
    """

    # --- live state -------------------------------------------------------

    @abstractmethod
    def exists(self) -> bool:
        """Whether a live workflow instance is stored."""

    @abstractmethod
    def load(self) -> Optional[WorkflowState]:
        """
        Load the live instance, or None if there is none.

        Raises:
            StateCorruptionError: If the stored state cannot be verified and
                no rolling backup could be recovered
            FileAccessError: If the store cannot be read
        """

    @abstractmethod
    def save(self, state: WorkflowState) -> None:
        """Atomically replace the live instance."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the live instance (no-op if absent)."""

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive-writer section. Re-entrant within one store object."""
        yield

    # --- checkpoints ------------------------------------------------------

    @abstractmethod
    def save_checkpoint(self, checkpoint: CheckpointData) -> None:
        pass

    @abstractmethod
    def load_checkpoint(self, checkpoint_id: str) -> CheckpointData:
        """
        Raises:
            CheckpointNotFoundError: If no checkpoint has that id
        """

    @abstractmethod
    def list_checkpoints(self) -> list[CheckpointData]:
        """All readable checkpoints, oldest first by (created_at, sequence)."""

    @abstractmethod
    def delete_checkpoint(self, checkpoint_id: str) -> None:
        pass

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        try:
            self.load_checkpoint(checkpoint_id)
            return True
        except CheckpointNotFoundError:
            return False

    # --- history and backups ----------------------------------------------

    @abstractmethod
    def archive(self, state: WorkflowState, reason: str) -> str:
        """Archive an instance into history; returns the archive id."""

    @abstractmethod
    def list_history(self) -> list[dict]:
        """Archive summaries, oldest first."""

    @abstractmethod
    def write_backup(self, state: WorkflowState, label: str) -> str:
        """Write a safety backup; returns the backup id."""

    @abstractmethod
    def list_backups(self) -> list[str]:
        """Safety backup ids, oldest first."""

    # --- integrity --------------------------------------------------------

    @abstractmethod
    def verify_integrity(self) -> tuple[bool, list[str]]:
        """
        Check the stored live state without loading it into the orchestrator.

        Returns:
            Tuple of (is_valid, problems). A missing state is valid.
        """

    @abstractmethod
    def recover_from_backup(self) -> Optional[WorkflowState]:
        """
        Restore the newest rolling backup that verifies.

        Returns:
            The recovered instance (already written as the live state), or
            None if no backup verified
        """

    # --- error records ----------------------------------------------------

    @abstractmethod
    def write_error_record(self, record: ErrorRecord) -> None:
        """Write or rewrite (by incident id) one error record."""

    @abstractmethod
    def list_error_records(self, limit: Optional[int] = None) -> list[ErrorRecord]:
        """Error records, newest first."""

    def record_backup_recovery(self, error: StateCorruptionError, state: WorkflowState) -> None:
        """Leave an error record for a live state repaired from a rolling backup."""
        record = ErrorRecord(
            incident_id=secrets.token_hex(6),
            kind=error.kind.value,
            message=error.message,
            details=error.to_dict()["details"],
            context=ErrorContext(
                workflow_id=state.workflow_id,
                workflow_type=state.workflow_type,
                current_phase=state.current_phase,
                phase_index=state.current_phase_index,
                operation="load",
                timestamp=self.clock(),
            ),
            recovery=RecoveryOutcome(
                strategy=BACKUP_RECOVERY,
                attempted=True,
                succeeded=True,
                message="Live state restored from a rolling backup",
                resulting_phase=state.current_phase,
            ),
        )
        try:
            self.write_error_record(record)
        except OSError as e:
            logger.error(f"Could not write error record {record.incident_id}: {e}")


# ============================================================================
# File-backed store
# ============================================================================

class FileStateStore(StateStore):
    """
    Atomic, checksummed, file-based state store.

    Every file carries `_version`, `_checksum` and `_updated_at`. Writes go to
    a unique temp file which is fsynced and renamed into place.
    """

    def __init__(
        self,
        paths: WorkflowPaths,
        rolling_backups: int = 10,
        lock_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.paths = paths
        self.rolling_backups = rolling_backups
        self.lock_timeout = lock_timeout
        self.clock = clock
        self._lock = FileLock(paths.state_lock())
        self._lock_depth = 0

    # --- low level file helpers -------------------------------------------

    def _write_json(self, path: Path, payload: dict) -> None:
        """Atomic write with integrity metadata."""
        data = dict(payload)
        data['_version'] = STATE_VERSION
        data['_checksum'] = compute_checksum(data)
        data['_updated_at'] = self.clock().isoformat()

        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.tmp.{secrets.token_hex(4)}")
        try:
            with open(temp_path, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, path)

            # Rename durability: best effort, the state is saved either way
            try:
                flags = os.O_RDONLY
                if hasattr(os, 'O_DIRECTORY'):
                    flags |= os.O_DIRECTORY
                dir_fd = os.open(str(path.parent), flags)
                try:
                    os.fsync(dir_fd)
                finally:
                    os.close(dir_fd)
            except OSError:
                pass
        except Exception:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            raise

    def _read_verified(self, path: Path) -> dict:
        """
        Read a JSON file and verify its checksum.

        Raises:
            StateCorruptionError: Invalid JSON, missing or mismatched checksum
            FileNotFoundError: If the file does not exist
        """
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise StateCorruptionError(f"{path.name} is not valid JSON: {e}", path=str(path))

        if not isinstance(data, dict):
            raise StateCorruptionError(f"{path.name} does not hold a JSON object", path=str(path))

        stored = data.get('_checksum')
        if stored is None:
            raise StateCorruptionError(
                f"{path.name} is missing its checksum. File may be corrupted or tampered.",
                path=str(path),
            )
        computed = compute_checksum(data)
        if stored != computed:
            raise StateCorruptionError(
                f"{path.name} failed its integrity check "
                f"(expected checksum {stored}, got {computed})",
                path=str(path),
            )

        return {k: v for k, v in data.items() if not k.startswith('_')}

    def _parse_state(self, data: dict, path: Path) -> WorkflowState:
        try:
            return WorkflowState.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(
                f"{path.name} does not describe a valid workflow: {e.error_count()} error(s)",
                path=str(path),
                validation_errors=[err['msg'] for err in e.errors()],
            )

    def _next_sequence(self, directory: Path, prefix: str) -> int:
        highest = 0
        if directory.exists():
            for p in directory.glob(f"{prefix}-*.json"):
                seq = p.stem[len(prefix) + 1:].split('-', 1)[0]
                if seq.isdigit():
                    highest = max(highest, int(seq))
        return highest + 1

    # --- live state -------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        if self._lock_depth == 0:
            try:
                self._lock.acquire_exclusive(self.lock_timeout)
            except LockTimeoutError as e:
                raise FileAccessError(str(e), retryable=True, path=str(self._lock.lock_path))
        self._lock_depth += 1
        try:
            yield
        finally:
            self._lock_depth -= 1
            if self._lock_depth == 0:
                self._lock.release()

    def exists(self) -> bool:
        return self.paths.state_file().exists()

    def load(self) -> Optional[WorkflowState]:
        path = self.paths.state_file()
        try:
            data = self._read_verified(path)
            return self._parse_state(data, path)
        except FileNotFoundError:
            return None
        except StateCorruptionError as e:
            logger.error(f"Live state failed verification: {e.message}")
            recovered = self.recover_from_backup()
            if recovered is not None:
                self.record_backup_recovery(e, recovered)
                return recovered
            raise
        except OSError as e:
            raise FileAccessError(
                f"Failed to read workflow state: {e}",
                retryable=True,
                path=str(path),
            )

    def save(self, state: WorkflowState) -> None:
        path = self.paths.state_file()
        try:
            with self.locked():
                if path.exists() and self.rolling_backups > 0:
                    self._rotate_state_backup(path)
                self._write_json(path, state.model_dump(mode="json"))
        except OSError as e:
            raise FileAccessError(
                f"Failed to save workflow state: {e}",
                retryable=True,
                path=str(path),
            )

    def _rotate_state_backup(self, path: Path) -> None:
        """Copy the current state file aside before it is replaced."""
        backup_dir = self.paths.state_backups_dir()
        backup_dir.mkdir(parents=True, exist_ok=True)
        seq = self._next_sequence(backup_dir, "state-backup")
        target = backup_dir / f"state-backup-{seq:06d}-{file_stamp(self.clock())}.json"
        target.write_bytes(path.read_bytes())

        backups = sorted(backup_dir.glob("state-backup-*.json"))
        for old in backups[:-self.rolling_backups]:
            old.unlink()

    def delete(self) -> None:
        with self.locked():
            try:
                self.paths.state_file().unlink()
            except FileNotFoundError:
                pass

    # --- checkpoints ------------------------------------------------------

    def save_checkpoint(self, checkpoint: CheckpointData) -> None:
        validate_name(checkpoint.checkpoint_id)
        try:
            self._write_json(
                self.paths.checkpoint_file(checkpoint.checkpoint_id),
                checkpoint.model_dump(mode="json"),
            )
        except OSError as e:
            raise FileAccessError(f"Failed to write checkpoint: {e}", retryable=True)

    def load_checkpoint(self, checkpoint_id: str) -> CheckpointData:
        path = self.paths.checkpoint_file(validate_name(checkpoint_id))
        try:
            data = self._read_verified(path)
        except FileNotFoundError:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=checkpoint_id,
            )
        try:
            return CheckpointData.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(
                f"Checkpoint {checkpoint_id} is malformed: {e.error_count()} error(s)",
                checkpoint_id=checkpoint_id,
            )

    def list_checkpoints(self) -> list[CheckpointData]:
        directory = self.paths.checkpoints_dir()
        if not directory.exists():
            return []
        checkpoints = []
        for path in directory.glob("*.json"):
            try:
                checkpoints.append(CheckpointData.model_validate(self._read_verified(path)))
            except (StateCorruptionError, ValidationError, OSError) as e:
                logger.warning(f"Ignoring unreadable checkpoint {path.name}: {e}")
        checkpoints.sort(key=lambda c: (c.created_at, c.sequence))
        return checkpoints

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        try:
            self.paths.checkpoint_file(validate_name(checkpoint_id)).unlink()
        except FileNotFoundError:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=checkpoint_id,
            )

    # --- history and backups ----------------------------------------------

    def archive(self, state: WorkflowState, reason: str) -> str:
        archived_at = self.clock()
        archive_id = f"{state.workflow_id}-{validate_name(reason)}-{file_stamp(archived_at)}"
        self._write_json(self.paths.history_dir() / f"{archive_id}.json", {
            "archive_id": archive_id,
            "reason": reason,
            "archived_at": archived_at.isoformat(),
            "state": state.model_dump(mode="json"),
        })
        return archive_id

    def list_history(self) -> list[dict]:
        directory = self.paths.history_dir()
        if not directory.exists():
            return []
        entries = []
        for path in sorted(directory.glob("*.json")):
            try:
                data = self._read_verified(path)
            except (StateCorruptionError, OSError) as e:
                logger.warning(f"Ignoring unreadable history entry {path.name}: {e}")
                continue
            entries.append({
                "archive_id": data.get("archive_id", path.stem),
                "reason": data.get("reason"),
                "archived_at": data.get("archived_at"),
                "workflow_id": data.get("state", {}).get("workflow_id"),
                "workflow_type": data.get("state", {}).get("workflow_type"),
            })
        entries.sort(key=lambda e: e["archived_at"] or "")
        return entries

    def write_backup(self, state: WorkflowState, label: str) -> str:
        base_id = f"{validate_name(label)}-{file_stamp(self.clock())}"
        directory = self.paths.backups_dir()
        backup_id, n = base_id, 1
        while (directory / f"{backup_id}.json").exists():
            n += 1
            backup_id = f"{base_id}-{n}"
        self._write_json(directory / f"{backup_id}.json", state.model_dump(mode="json"))
        logger.info(f"Safety backup written: {backup_id}")
        return backup_id

    def list_backups(self) -> list[str]:
        directory = self.paths.backups_dir()
        if not directory.exists():
            return []
        paths = sorted(directory.glob("*.json"), key=lambda p: (p.stat().st_mtime, p.name))
        return [p.stem for p in paths]

    # --- integrity --------------------------------------------------------

    def verify_integrity(self) -> tuple[bool, list[str]]:
        path = self.paths.state_file()
        if not path.exists():
            return True, []
        try:
            self._parse_state(self._read_verified(path), path)
        except StateCorruptionError as e:
            return False, [e.message] + list(e.details.get("validation_errors", []))
        except OSError as e:
            return False, [f"Cannot read {path.name}: {e}"]
        return True, []

    def recover_from_backup(self) -> Optional[WorkflowState]:
        backup_dir = self.paths.state_backups_dir()
        if not backup_dir.exists():
            return None
        for path in sorted(backup_dir.glob("state-backup-*.json"), reverse=True):
            try:
                state = self._parse_state(self._read_verified(path), path)
            except (StateCorruptionError, OSError) as e:
                logger.warning(f"Backup {path.name} did not verify: {e}")
                continue
            with self.locked():
                self._write_json(self.paths.state_file(), state.model_dump(mode="json"))
            logger.warning(f"Recovered workflow state from {path.name}")
            return state
        return None

    # --- error records ----------------------------------------------------

    def _error_record_path(self, record: ErrorRecord) -> Path:
        directory = self.paths.error_logs_dir()
        existing = list(directory.glob(f"error-*-{record.incident_id}.json"))
        if existing:
            return existing[0]
        stamp = file_stamp(record.context.timestamp)
        return directory / f"error-{stamp}-{record.incident_id}.json"

    def write_error_record(self, record: ErrorRecord) -> None:
        validate_name(record.incident_id)
        directory = self.paths.error_logs_dir()
        directory.mkdir(parents=True, exist_ok=True)
        path = self._error_record_path(record)
        first_write = not path.exists()

        self._write_json(path, record.model_dump(mode="json"))

        if first_write:
            line = f"[{record.context.timestamp.isoformat()}] {record.kind}: {record.message}\n"
            with open(self.paths.error_line_log(), 'a') as f:
                f.write(line)

    def list_error_records(self, limit: Optional[int] = None) -> list[ErrorRecord]:
        directory = self.paths.error_logs_dir()
        if not directory.exists():
            return []
        records = []
        for path in directory.glob("error-*.json"):
            try:
                records.append(ErrorRecord.model_validate(self._read_verified(path)))
            except (StateCorruptionError, ValidationError, OSError) as e:
                logger.warning(f"Ignoring unreadable error record {path.name}: {e}")
        records.sort(key=lambda r: r.context.timestamp, reverse=True)
        return records[:limit] if limit is not None else records


# ============================================================================
# In-memory store
# ============================================================================

class InMemoryStateStore(StateStore):
    """
    Store that keeps everything in process memory.

    Values are kept in their JSON form so callers never share mutable
    objects with the store, matching the copy semantics of the file store.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self.clock = clock
        self._state: Optional[dict] = None
        self._checkpoints: dict[str, dict] = {}
        self._history: list[dict] = []
        self._backups: dict[str, dict] = {}
        self._rolling: list[dict] = []
        self._errors: dict[str, dict] = {}
        self.error_lines: list[str] = []
        # Set to simulate a state file that fails its integrity check
        self.corrupted = False

    def exists(self) -> bool:
        return self._state is not None

    def load(self) -> Optional[WorkflowState]:
        if self._state is None:
            return None
        if self.corrupted:
            error = StateCorruptionError("Stored workflow state failed its integrity check")
            recovered = self.recover_from_backup()
            if recovered is not None:
                self.record_backup_recovery(error, recovered)
                return recovered
            raise error
        try:
            return WorkflowState.model_validate(self._state)
        except ValidationError as e:
            raise StateCorruptionError(
                f"Stored state does not describe a valid workflow: {e.error_count()} error(s)",
                validation_errors=[err['msg'] for err in e.errors()],
            )

    def save(self, state: WorkflowState) -> None:
        if self._state is not None and not self.corrupted:
            self._rolling.append(self._state)
            del self._rolling[:-10]
        self._state = state.model_dump(mode="json")
        self.corrupted = False

    def delete(self) -> None:
        self._state = None
        self.corrupted = False

    def save_checkpoint(self, checkpoint: CheckpointData) -> None:
        validate_name(checkpoint.checkpoint_id)
        self._checkpoints[checkpoint.checkpoint_id] = checkpoint.model_dump(mode="json")

    def load_checkpoint(self, checkpoint_id: str) -> CheckpointData:
        data = self._checkpoints.get(checkpoint_id)
        if data is None:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=checkpoint_id,
            )
        return CheckpointData.model_validate(data)

    def list_checkpoints(self) -> list[CheckpointData]:
        checkpoints = [CheckpointData.model_validate(d) for d in self._checkpoints.values()]
        checkpoints.sort(key=lambda c: (c.created_at, c.sequence))
        return checkpoints

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        if self._checkpoints.pop(checkpoint_id, None) is None:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=checkpoint_id,
            )

    def archive(self, state: WorkflowState, reason: str) -> str:
        archived_at = self.clock()
        archive_id = f"{state.workflow_id}-{reason}-{file_stamp(archived_at)}"
        self._history.append({
            "archive_id": archive_id,
            "reason": reason,
            "archived_at": archived_at.isoformat(),
            "state": state.model_dump(mode="json"),
        })
        return archive_id

    def list_history(self) -> list[dict]:
        return [
            {
                "archive_id": entry["archive_id"],
                "reason": entry["reason"],
                "archived_at": entry["archived_at"],
                "workflow_id": entry["state"]["workflow_id"],
                "workflow_type": entry["state"]["workflow_type"],
            }
            for entry in self._history
        ]

    def write_backup(self, state: WorkflowState, label: str) -> str:
        base_id = f"{validate_name(label)}-{file_stamp(self.clock())}"
        backup_id, n = base_id, 1
        while backup_id in self._backups:
            n += 1
            backup_id = f"{base_id}-{n}"
        self._backups[backup_id] = state.model_dump(mode="json")
        return backup_id

    def list_backups(self) -> list[str]:
        return list(self._backups)

    def read_backup(self, backup_id: str) -> WorkflowState:
        return WorkflowState.model_validate(self._backups[backup_id])

    def verify_integrity(self) -> tuple[bool, list[str]]:
        if self._state is None:
            return True, []
        if self.corrupted:
            return False, ["Stored workflow state failed its integrity check"]
        try:
            WorkflowState.model_validate(self._state)
        except ValidationError as e:
            return False, [err['msg'] for err in e.errors()]
        return True, []

    def recover_from_backup(self) -> Optional[WorkflowState]:
        for data in reversed(self._rolling):
            try:
                state = WorkflowState.model_validate(data)
            except ValidationError:
                continue
            self._state = data
            self.corrupted = False
            return state
        return None

    def write_error_record(self, record: ErrorRecord) -> None:
        if record.incident_id not in self._errors:
            self.error_lines.append(
                f"[{record.context.timestamp.isoformat()}] {record.kind}: {record.message}"
            )
        self._errors[record.incident_id] = record.model_dump(mode="json")

    def list_error_records(self, limit: Optional[int] = None) -> list[ErrorRecord]:
        records = [ErrorRecord.model_validate(d) for d in self._errors.values()]
        records.sort(key=lambda r: r.context.timestamp, reverse=True)
        return records[:limit] if limit is not None else records
