"""
Tests for the checkpoint policy.

Tests cover:
- Trigger evaluation and priority
- Bookkeeping in checkpoint_meta
- Pruning of automatic checkpoints
- Lookup and restore
"""

import pytest

from phaseflow.checkpoint import CheckpointManager
from phaseflow.errors import CheckpointNotFoundError
from phaseflow.schema import CheckpointTrigger, PhaseDetails, WorkflowState


def make_state(clock, progress=0):
    return WorkflowState(
        workflow_id="workflow-test",
        workflow_type="new-project",
        started_at=clock(),
        updated_at=clock(),
        current_phase="discovery",
        phase_details=PhaseDetails(name="discovery", progress_percentage=progress),
    )


@pytest.fixture
def manager(store, clock):
    return CheckpointManager(store, progress_threshold=25, interval_minutes=30, max_auto_checkpoints=3, clock=clock)


class TestTriggers:
    """CheckpointManager.evaluate()"""

    def test_nothing_fires_for_fresh_state(self, manager, clock):
        assert manager.evaluate(make_state(clock)) is None

    def test_progress_milestone(self, manager, clock):
        assert manager.evaluate(make_state(clock, progress=24)) is None
        assert manager.evaluate(make_state(clock, progress=25)) == CheckpointTrigger.PROGRESS_MILESTONE

    def test_time_interval_from_start(self, manager, clock):
        state = make_state(clock)
        clock.advance(minutes=29)
        assert manager.evaluate(state) is None
        clock.advance(minutes=1)
        assert manager.evaluate(state) == CheckpointTrigger.TIME_INTERVAL

    def test_phase_completion_wins(self, manager, clock):
        """Only the highest-priority trigger is reported."""
        state = make_state(clock, progress=100)
        clock.advance(hours=2)
        assert manager.evaluate(state, phase_completed=True) == CheckpointTrigger.PHASE_COMPLETION
        assert manager.evaluate(state) == CheckpointTrigger.PROGRESS_MILESTONE

    def test_milestone_measured_from_last_checkpoint(self, manager, clock):
        state = make_state(clock, progress=30)
        manager.maybe_checkpoint(state)
        assert state.checkpoint_meta.last_progress_at_checkpoint == 30

        state.phase_details.progress_percentage = 50
        assert manager.evaluate(state) is None
        state.phase_details.progress_percentage = 55
        assert manager.evaluate(state) == CheckpointTrigger.PROGRESS_MILESTONE


class TestCreate:
    """Checkpoint creation and bookkeeping."""

    def test_automatic_checkpoint_updates_meta(self, manager, store, clock):
        state = make_state(clock, progress=40)
        checkpoint = manager.create(state, CheckpointTrigger.PROGRESS_MILESTONE)

        assert checkpoint.checkpoint_id.startswith("auto-progress-milestone-")
        assert checkpoint.progress_at_creation == 40
        assert state.checkpoint_meta.total_checkpoints == 1
        assert state.checkpoint_meta.last_checkpoint_time == clock()
        # The snapshot carries the bookkeeping as of its own creation
        assert checkpoint.state_snapshot.checkpoint_meta.total_checkpoints == 1
        assert store.has_checkpoint(checkpoint.checkpoint_id)

    def test_manual_checkpoint_does_not_reset_triggers(self, manager, clock):
        state = make_state(clock, progress=40)
        checkpoint = manager.create(state, CheckpointTrigger.MANUAL, note="before demo")

        assert checkpoint.checkpoint_id.startswith("manual-")
        assert checkpoint.note == "before demo"
        assert state.checkpoint_meta.last_partial_save == clock()
        assert state.checkpoint_meta.last_checkpoint_time is None
        assert state.checkpoint_meta.last_progress_at_checkpoint == 0

    def test_named_manual_checkpoint(self, manager, clock):
        checkpoint = manager.create(make_state(clock), CheckpointTrigger.MANUAL, name="before-review")
        assert checkpoint.checkpoint_id == "before-review"

    def test_same_instant_ids_do_not_collide(self, manager, clock):
        state = make_state(clock)
        first = manager.create(state, CheckpointTrigger.TIME_INTERVAL)
        second = manager.create(state, CheckpointTrigger.TIME_INTERVAL)
        assert first.checkpoint_id != second.checkpoint_id
        assert second.sequence == first.sequence + 1

    def test_results_are_kept(self, manager, clock):
        state = make_state(clock)
        state.phases_completed.append("discovery")
        checkpoint = manager.create(state, CheckpointTrigger.PHASE_COMPLETION, results={"interviews": 3})
        assert checkpoint.results == {"interviews": 3}
        assert state.checkpoint_meta.phase_checkpoints["discovery"] == clock()

    def test_snapshot_is_independent(self, manager, clock):
        state = make_state(clock)
        checkpoint = manager.create(state, CheckpointTrigger.MANUAL)
        state.current_phase = "research"
        assert checkpoint.state_snapshot.current_phase == "discovery"


class TestPrune:
    """Only automatic checkpoints are pruned."""

    def test_prune_keeps_newest_automatic(self, manager, store, clock):
        state = make_state(clock)
        manual = manager.create(state, CheckpointTrigger.MANUAL, name="keep-me")
        created = []
        for _ in range(5):
            clock.advance(minutes=1)
            created.append(manager.create(state, CheckpointTrigger.TIME_INTERVAL).checkpoint_id)

        remaining = [c.checkpoint_id for c in store.list_checkpoints()]
        assert manual.checkpoint_id in remaining
        assert [c for c in remaining if c.startswith("auto-")] == created[-3:]


class TestFindAndRestore:
    """Lookup and restore."""

    def test_find_without_checkpoints(self, manager):
        with pytest.raises(CheckpointNotFoundError, match="No checkpoints available"):
            manager.find()

    def test_latest_and_filters(self, manager, clock):
        state = make_state(clock)
        auto = manager.create(state, CheckpointTrigger.TIME_INTERVAL)
        clock.advance(minutes=1)
        manual = manager.create(state, CheckpointTrigger.MANUAL)

        assert manager.latest().checkpoint_id == manual.checkpoint_id
        assert manager.latest(automatic_only=True).checkpoint_id == auto.checkpoint_id
        assert manager.latest(workflow_id="other") is None
        assert [c.checkpoint_id for c in manager.list()] == [manual.checkpoint_id, auto.checkpoint_id]

    def test_restore_replaces_live_state(self, manager, store, clock):
        state = make_state(clock, progress=10)
        checkpoint = manager.create(state, CheckpointTrigger.MANUAL, name="early")
        state.phase_details.progress_percentage = 90
        store.save(state)

        restored = manager.restore("early")
        assert restored.checkpoint_id == checkpoint.checkpoint_id
        assert store.load().phase_details.progress_percentage == 10

    def test_restore_unknown_name(self, manager):
        with pytest.raises(CheckpointNotFoundError):
            manager.restore("missing")
