"""
Tests for the state stores.

Tests cover:
- Atomic, checksummed writes of the live state
- Integrity failures and rolling-backup recovery
- Checkpoints, history, safety backups and error records
- The in-memory store's copy semantics
"""

import json
from datetime import datetime, timezone

import pytest

from phaseflow.errors import CheckpointNotFoundError, StateCorruptionError
from phaseflow.path_resolver import WorkflowPaths
from phaseflow.schema import (
    CheckpointData,
    CheckpointTrigger,
    ErrorContext,
    ErrorRecord,
    PhaseDetails,
    RecoveryOutcome,
    WorkflowState,
)
from phaseflow.state_store import (
    BACKUP_RECOVERY,
    FileStateStore,
    InMemoryStateStore,
    compute_checksum,
    validate_name,
)


def make_state(workflow_id="workflow-test", phase="discovery", index=0):
    return WorkflowState(
        workflow_id=workflow_id,
        workflow_type="new-project",
        current_phase_index=index,
        current_phase=phase,
        phase_details=PhaseDetails(name=phase),
    )


@pytest.fixture
def paths(tmp_path):
    return WorkflowPaths(base_dir=tmp_path)


@pytest.fixture
def file_store(paths, clock):
    return FileStateStore(paths, rolling_backups=3, clock=clock)


class TestFileStateStore:
    """Live state persistence."""

    def test_load_without_state(self, file_store):
        assert file_store.load() is None
        assert not file_store.exists()

    def test_save_and_load(self, file_store, paths):
        state = make_state()
        file_store.save(state)

        loaded = file_store.load()
        assert loaded == state
        data = json.loads(paths.state_file().read_text())
        assert data["_version"] == "1.0"
        assert data["_checksum"] == compute_checksum(data)

    def test_no_temp_files_left(self, file_store, paths):
        file_store.save(make_state())
        file_store.save(make_state(phase="research", index=1))
        leftovers = [p.name for p in paths.root.iterdir() if ".tmp." in p.name]
        assert leftovers == []

    def test_tampered_file_without_backup_raises(self, file_store, paths):
        file_store.save(make_state())
        data = json.loads(paths.state_file().read_text())
        data["current_phase"] = "sprint"
        paths.state_file().write_text(json.dumps(data))

        with pytest.raises(StateCorruptionError, match="integrity check"):
            file_store.load()

    def test_invalid_json_raises(self, file_store, paths):
        paths.root.mkdir(parents=True)
        paths.state_file().write_text("{not json")
        with pytest.raises(StateCorruptionError, match="not valid JSON"):
            file_store.load()

    def test_corruption_recovers_from_rolling_backup(self, file_store, paths):
        """A corrupt state file is replaced by the newest verifiable backup."""
        file_store.save(make_state())
        file_store.save(make_state(phase="research", index=1))
        paths.state_file().write_text("garbage")

        recovered = file_store.load()
        assert recovered.current_phase == "discovery"
        assert file_store.verify_integrity() == (True, [])

    def test_backup_recovery_leaves_error_record(self, file_store, paths):
        """A repair done inside load() shows up in the error log."""
        file_store.save(make_state())
        file_store.save(make_state(phase="research", index=1))
        paths.state_file().write_text("garbage")

        file_store.load()

        records = file_store.list_error_records()
        assert len(records) == 1
        assert records[0].kind == "STATE_CORRUPTION"
        assert records[0].context.operation == "load"
        assert records[0].recovery.strategy == BACKUP_RECOVERY
        assert records[0].recovery.succeeded
        assert records[0].recovery.resulting_phase == "discovery"
        assert "STATE_CORRUPTION" in paths.error_line_log().read_text()

    def test_rolling_backups_are_bounded(self, file_store, paths):
        for i in range(6):
            file_store.save(make_state(workflow_id=f"workflow-{i}"))
        backups = list(paths.state_backups_dir().glob("state-backup-*.json"))
        assert len(backups) == 3

    def test_verify_integrity_reports_problems(self, file_store, paths):
        file_store.save(make_state())
        paths.state_file().write_text(json.dumps({"workflow_id": "x"}))
        ok, problems = file_store.verify_integrity()
        assert not ok
        assert "missing its checksum" in problems[0]

    def test_delete(self, file_store):
        file_store.save(make_state())
        file_store.delete()
        assert not file_store.exists()
        file_store.delete()

    def test_locked_is_reentrant(self, file_store, paths):
        with file_store.locked():
            with file_store.locked():
                file_store.save(make_state())
            assert paths.state_lock().exists()
        assert file_store.load() is not None


class TestFileCheckpoints:
    """Checkpoint files."""

    def _checkpoint(self, checkpoint_id, sequence, clock):
        state = make_state()
        return CheckpointData(
            checkpoint_id=checkpoint_id,
            trigger=CheckpointTrigger.MANUAL,
            sequence=sequence,
            created_at=clock(),
            workflow_id=state.workflow_id,
            phase=state.current_phase,
            state_snapshot=state,
        )

    def test_save_load_list_delete(self, file_store, clock):
        file_store.save_checkpoint(self._checkpoint("first", 1, clock))
        clock.advance(minutes=1)
        file_store.save_checkpoint(self._checkpoint("second", 2, clock))

        assert file_store.load_checkpoint("first").sequence == 1
        assert [c.checkpoint_id for c in file_store.list_checkpoints()] == ["first", "second"]
        assert file_store.has_checkpoint("second")

        file_store.delete_checkpoint("first")
        assert not file_store.has_checkpoint("first")

    def test_missing_checkpoint(self, file_store):
        with pytest.raises(CheckpointNotFoundError):
            file_store.load_checkpoint("nope")
        with pytest.raises(CheckpointNotFoundError):
            file_store.delete_checkpoint("nope")

    def test_unsafe_names_rejected(self, file_store):
        with pytest.raises(ValueError):
            file_store.load_checkpoint("../state")
        with pytest.raises(ValueError):
            validate_name("")

    def test_unreadable_checkpoint_is_skipped(self, file_store, paths, clock):
        file_store.save_checkpoint(self._checkpoint("good", 1, clock))
        (paths.checkpoints_dir() / "bad.json").write_text("{}")
        assert [c.checkpoint_id for c in file_store.list_checkpoints()] == ["good"]


class TestHistoryAndBackups:
    """Archives and safety backups."""

    def test_archive_and_list_history(self, file_store):
        archive_id = file_store.archive(make_state(), "completed")
        history = file_store.list_history()
        assert len(history) == 1
        assert history[0]["archive_id"] == archive_id
        assert history[0]["reason"] == "completed"
        assert history[0]["workflow_type"] == "new-project"

    def test_backup_ids_are_unique(self, file_store):
        first = file_store.write_backup(make_state(), "backup-before-reset")
        second = file_store.write_backup(make_state(), "backup-before-reset")
        assert first != second
        assert set(file_store.list_backups()) == {first, second}


class TestErrorRecords:
    """Durable error log."""

    def _record(self, incident_id, clock, succeeded=False):
        return ErrorRecord(
            incident_id=incident_id,
            kind="NETWORK_ERROR",
            message="connection reset",
            context=ErrorContext(workflow_id="workflow-test", timestamp=clock()),
            recovery=RecoveryOutcome(strategy="retry_operation", succeeded=succeeded),
        )

    def test_rewrite_keeps_one_file_and_one_line(self, file_store, paths, clock):
        """The outcome rewrite replaces the record; the line log gets one entry."""
        file_store.write_error_record(self._record("abc123", clock))
        file_store.write_error_record(self._record("abc123", clock, succeeded=True))

        records = file_store.list_error_records()
        assert len(records) == 1
        assert records[0].recovery.succeeded

        lines = paths.error_line_log().read_text().splitlines()
        assert lines == [f"[{clock().isoformat()}] NETWORK_ERROR: connection reset"]

    def test_newest_first_with_limit(self, file_store, clock):
        for i in range(4):
            file_store.write_error_record(self._record(f"inc{i}", clock))
            clock.advance(seconds=1)
        records = file_store.list_error_records(limit=2)
        assert [r.incident_id for r in records] == ["inc3", "inc2"]


class TestInMemoryStateStore:
    """The in-memory store used in tests and embedding."""

    def test_copies_are_not_shared(self, clock):
        store = InMemoryStateStore(clock=clock)
        state = make_state()
        store.save(state)
        state.current_phase = "mutated"

        assert store.load().current_phase == "discovery"
        assert store.load() is not store.load()

    def test_corruption_flag(self, clock):
        store = InMemoryStateStore(clock=clock)
        store.save(make_state())
        store.corrupted = True

        assert store.verify_integrity()[0] is False
        with pytest.raises(StateCorruptionError):
            store.load()

    def test_corruption_recovers_from_previous_save(self, clock):
        store = InMemoryStateStore(clock=clock)
        store.save(make_state())
        store.save(make_state(phase="research", index=1))
        store.corrupted = True

        assert store.load().current_phase == "discovery"
        assert store.verify_integrity() == (True, [])
        assert [r.kind for r in store.list_error_records()] == ["STATE_CORRUPTION"]
        assert len(store.error_lines) == 1

    def test_read_backup(self, clock):
        store = InMemoryStateStore(clock=clock)
        backup_id = store.write_backup(make_state(), "backup-before-import")
        assert store.read_backup(backup_id).workflow_id == "workflow-test"
        assert store.list_backups() == [backup_id]


def test_file_stamp_is_sortable():
    from phaseflow.state_store import file_stamp

    early = file_stamp(datetime(2025, 1, 1, tzinfo=timezone.utc))
    late = file_stamp(datetime(2025, 1, 2, tzinfo=timezone.utc))
    assert early < late
