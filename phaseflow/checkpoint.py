"""
Checkpoint policy and restore.

Decides when a workflow instance should be snapshotted, writes the
snapshot through the state store, prunes old automatic checkpoints and
restores an instance from a checkpoint.

Automatic triggers, in priority order:
- phase-completion: a phase was just completed
- progress-milestone: phase progress moved by at least `progress_threshold`
  points since the last checkpoint
- time-interval: `interval_minutes` elapsed since the last checkpoint (or
  since the workflow started, if there is none yet)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .errors import CheckpointNotFoundError
from .schema import CheckpointData, CheckpointTrigger, WorkflowState
from .state_store import StateStore, file_stamp, validate_name

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointManager:
    """
    Manages checkpoint creation, storage, and retrieval.
    """

    def __init__(
        self,
        store: StateStore,
        progress_threshold: int = 25,
        interval_minutes: int = 30,
        max_auto_checkpoints: int = 10,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.progress_threshold = progress_threshold
        self.interval = timedelta(minutes=interval_minutes)
        self.max_auto_checkpoints = max_auto_checkpoints
        self.clock = clock

    def evaluate(self, state: WorkflowState, phase_completed: bool = False) -> Optional[CheckpointTrigger]:
        """
        Return the trigger that fires for this state, if any.

        Only the first matching trigger is reported.
        """
        if phase_completed:
            return CheckpointTrigger.PHASE_COMPLETION

        meta = state.checkpoint_meta
        progress = state.phase_details.progress_percentage
        if progress - meta.last_progress_at_checkpoint >= self.progress_threshold:
            return CheckpointTrigger.PROGRESS_MILESTONE

        since = meta.last_checkpoint_time or state.started_at
        if self.clock() - since >= self.interval:
            return CheckpointTrigger.TIME_INTERVAL

        return None

    def maybe_checkpoint(
        self,
        state: WorkflowState,
        phase_completed: bool = False,
        results: Optional[dict] = None,
    ) -> Optional[CheckpointData]:
        """Create an automatic checkpoint if a trigger fires."""
        trigger = self.evaluate(state, phase_completed)
        if trigger is None:
            return None
        return self.create(state, trigger, results=results)

    def create(
        self,
        state: WorkflowState,
        trigger: CheckpointTrigger,
        name: Optional[str] = None,
        note: Optional[str] = None,
        results: Optional[dict] = None,
    ) -> CheckpointData:
        """
        Snapshot the instance.

        `state.checkpoint_meta` is updated first so the snapshot carries the
        bookkeeping as of its own creation. Manual checkpoints do not reset
        the automatic triggers.

        Args:
            state: Live instance (its checkpoint_meta is mutated)
            trigger: Why the checkpoint is taken
            name: Optional checkpoint id for manual checkpoints
            note: Optional free-form note
            results: Worker results to keep with the snapshot

        Returns:
            CheckpointData: The persisted checkpoint
        """
        now = self.clock()
        sequence = self._next_sequence()
        progress = state.phase_details.progress_percentage
        meta = state.checkpoint_meta

        meta.total_checkpoints += 1
        if trigger == CheckpointTrigger.MANUAL:
            meta.last_partial_save = now
            checkpoint_id = validate_name(name) if name else f"manual-{file_stamp(now)}"
        else:
            meta.last_checkpoint_time = now
            meta.last_progress_at_checkpoint = progress
            if trigger == CheckpointTrigger.PHASE_COMPLETION and state.phases_completed:
                meta.phase_checkpoints[state.phases_completed[-1]] = now
            checkpoint_id = f"auto-{trigger.value}-{file_stamp(now)}"

        if not name and self.store.has_checkpoint(checkpoint_id):
            checkpoint_id = f"{checkpoint_id}-{sequence}"

        checkpoint = CheckpointData(
            checkpoint_id=checkpoint_id,
            trigger=trigger,
            sequence=sequence,
            created_at=now,
            workflow_id=state.workflow_id,
            phase=state.current_phase,
            progress_at_creation=progress,
            note=note,
            results=dict(results or {}),
            state_snapshot=state.model_copy(deep=True),
        )
        self.store.save_checkpoint(checkpoint)
        logger.info(f"Checkpoint created: {checkpoint_id} ({trigger.value}, phase {state.current_phase})")

        if checkpoint.automatic:
            self.prune()
        return checkpoint

    def _next_sequence(self) -> int:
        existing = self.store.list_checkpoints()
        return max((c.sequence for c in existing), default=0) + 1

    def prune(self) -> List[str]:
        """
        Delete automatic checkpoints beyond the newest `max_auto_checkpoints`.

        Manual checkpoints are never pruned.

        Returns:
            Ids of the deleted checkpoints
        """
        automatic = [c for c in self.store.list_checkpoints() if c.automatic]
        excess = automatic[:-self.max_auto_checkpoints] if len(automatic) > self.max_auto_checkpoints else []
        for checkpoint in excess:
            self.store.delete_checkpoint(checkpoint.checkpoint_id)
            logger.debug(f"Pruned checkpoint {checkpoint.checkpoint_id}")
        return [c.checkpoint_id for c in excess]

    def list(self, workflow_id: Optional[str] = None) -> List[CheckpointData]:
        """
        List checkpoints, optionally filtered by workflow.

        Returns:
            List of checkpoints, newest first
        """
        checkpoints = self.store.list_checkpoints()
        if workflow_id:
            checkpoints = [c for c in checkpoints if c.workflow_id == workflow_id]
        return list(reversed(checkpoints))

    def latest(self, workflow_id: Optional[str] = None, automatic_only: bool = False) -> Optional[CheckpointData]:
        """Get the most recent checkpoint."""
        for checkpoint in self.list(workflow_id):
            if automatic_only and not checkpoint.automatic:
                continue
            return checkpoint
        return None

    def find(self, name: Optional[str] = None, workflow_id: Optional[str] = None) -> CheckpointData:
        """
        Look up a checkpoint by id, or the latest one when no id is given.

        Raises:
            CheckpointNotFoundError: If the name is not a valid checkpoint id,
                the named checkpoint does not exist or there are no
                checkpoints at all
        """
        if name:
            try:
                validate_name(name)
            except ValueError as e:
                raise CheckpointNotFoundError(str(e), checkpoint_id=name)
            return self.store.load_checkpoint(name)
        checkpoint = self.latest(workflow_id)
        if checkpoint is None:
            raise CheckpointNotFoundError("No checkpoints available for restoration")
        return checkpoint

    def restore(self, name: Optional[str] = None, workflow_id: Optional[str] = None) -> CheckpointData:
        """
        Replace the live instance with a checkpoint's snapshot.

        The caller is responsible for re-validating the restored instance.

        Args:
            name: Checkpoint id, or None for the latest checkpoint
            workflow_id: Restrict "latest" to this workflow

        Raises:
            CheckpointNotFoundError: See find()
        """
        checkpoint = self.find(name, workflow_id)
        restored = checkpoint.state_snapshot.model_copy(deep=True)
        self.store.save(restored)
        logger.info(f"Restored workflow {restored.workflow_id} from checkpoint {checkpoint.checkpoint_id}")
        return checkpoint
