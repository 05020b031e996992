"""
Workflow Orchestrator - Core Logic

This module implements the phase state machine: starting a workflow,
recording progress, completing phases, parking on approval gates and the
operator-facing recovery actions. Every mutation is persisted immediately
through the state store; every load is validated before use.
"""

import json
import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from .approval_gate import ApprovalGateManager, GateTimeoutStatus
from .checkpoint import CheckpointManager
from .config import CONFIG_FILENAME, ConfigManager, PhaseflowConfig
from .errors import (
    ApprovalGateError,
    CheckpointNotFoundError,
    FileAccessError,
    InvalidPhaseError,
    NoActiveWorkflowError,
    StateCorruptionError,
    WorkflowAlreadyActiveError,
    WorkflowError,
)
from .path_resolver import WorkflowPaths
from .recovery import ErrorRecoveryEngine, RecoveryContext, RecoveryResult
from .registry import WorkflowRegistry
from .schema import (
    CheckpointData,
    CheckpointTrigger,
    PhaseRunStatus,
    WorkerStatus,
    WorkflowState,
    new_phase_details,
)
from .state_store import FileStateStore, StateStore

logger = logging.getLogger(__name__)

LOCAL_WORKFLOWS_FILE = "workflows.yaml"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowOrchestrator:
    """
    The phase state machine for the single live workflow instance.

    Collaborators are injected; use for_directory() to build a fully wired
    file-backed orchestrator.
    """

    def __init__(
        self,
        store: StateStore,
        registry: WorkflowRegistry,
        checkpoints: CheckpointManager,
        gates: ApprovalGateManager,
        recovery: ErrorRecoveryEngine,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.registry = registry
        self.checkpoints = checkpoints
        self.gates = gates
        self.recovery = recovery
        self.clock = clock
        self.config: Optional[PhaseflowConfig] = None
        self.paths: Optional[WorkflowPaths] = None

    @classmethod
    def for_directory(
        cls,
        working_dir: Union[str, Path] = ".",
        config_manager: Optional[ConfigManager] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "WorkflowOrchestrator":
        """
        Wire an orchestrator over the state directory of `working_dir`.

        Workflow types come from the bundled definitions, a workflows.yaml in
        the working directory, and the configured workflows_file.
        """
        working_dir = Path(working_dir).resolve()
        config_manager = config_manager or ConfigManager(working_dir / CONFIG_FILENAME)
        config = config_manager.config

        paths = WorkflowPaths(base_dir=working_dir, state_dir=config.state.state_dir)
        store = FileStateStore(
            paths,
            rolling_backups=config.state.rolling_backups,
            lock_timeout=config.state.lock_timeout_seconds,
            clock=clock,
        )

        extra_files = []
        local_workflows = working_dir / LOCAL_WORKFLOWS_FILE
        if local_workflows.exists():
            extra_files.append(local_workflows)
        if config.workflows_file:
            extra_files.append(config_manager.resolve(config.workflows_file))
        registry = WorkflowRegistry.default(extra_files)

        checkpoints = CheckpointManager(
            store,
            progress_threshold=config.checkpoint.progress_threshold,
            interval_minutes=config.checkpoint.interval_minutes,
            max_auto_checkpoints=config.checkpoint.max_auto_checkpoints,
            clock=clock,
        )
        gates = ApprovalGateManager(config.gates.default_timeout_minutes, clock=clock)
        recovery = ErrorRecoveryEngine(
            store,
            registry,
            checkpoints,
            gates,
            retry_policy=config.retry.to_policy(),
            clock=clock,
            state_location=config.state.state_dir,
        )

        orchestrator = cls(store, registry, checkpoints, gates, recovery, clock=clock)
        orchestrator.config = config
        orchestrator.paths = paths
        return orchestrator

    # ========================================================================
    # Loading and saving
    # ========================================================================

    def _load(self, operation: str) -> Optional[WorkflowState]:
        """
        Load and validate the live instance.

        An instance that fails its integrity check or validation is routed
        through the recovery engine once (restore latest checkpoint). If the
        restored instance does not validate either, the original error is
        raised with manual-intervention instructions attached.
        """
        try:
            state = self.store.load()
        except StateCorruptionError as e:
            return self._recover_on_load(e, operation, None)

        if state is None:
            return None

        problems = self.recovery.validate(state)
        if problems:
            error = StateCorruptionError(
                f"Workflow state failed validation: {'; '.join(problems)}",
                validation_errors=problems,
                workflow_id=state.workflow_id,
            )
            return self._recover_on_load(error, operation, state)
        return state

    def _recover_on_load(
        self,
        error: StateCorruptionError,
        operation: str,
        state: Optional[WorkflowState],
    ) -> WorkflowState:
        context = RecoveryContext.from_state(state, operation=operation)
        result = self.recovery.handle(error, context)
        if result.recovered and result.state is not None and not self.recovery.validate(result.state):
            logger.warning(f"Workflow state recovered: {result.message}")
            return result.state
        raise error

    def _require(self, operation: str) -> WorkflowState:
        state = self._load(operation)
        if state is None:
            raise NoActiveWorkflowError(f"No active workflow (cannot {operation.replace('_', ' ')})")
        return state

    def _save(self, state: WorkflowState) -> None:
        now = self.clock()
        state.checkpoint_meta.last_save_time = now
        state.touch(now)
        self.store.save(state)

    @staticmethod
    def _new_workflow_id(now: datetime) -> str:
        return f"workflow-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self, workflow_type: str, parallel: bool = False, dry_run: bool = False) -> WorkflowState:
        """
        Create a new workflow instance positioned on the first phase.

        Raises:
            InvalidWorkflowTypeError: If the type is not registered
            WorkflowAlreadyActiveError: If a live instance already exists
        """
        definition = self.registry.get(workflow_type)

        with self.store.locked():
            existing = self._load("start")
            if existing is not None:
                raise WorkflowAlreadyActiveError(
                    f"Active workflow already exists: {existing.workflow_id} "
                    f"({existing.workflow_type}). Resume or reset it first.",
                    workflow_id=existing.workflow_id,
                    workflow_type=existing.workflow_type,
                )

            now = self.clock()
            first_phase = definition.phases[0]
            state = WorkflowState(
                workflow_id=self._new_workflow_id(now),
                workflow_type=workflow_type,
                started_at=now,
                updated_at=now,
                current_phase_index=0,
                current_phase=first_phase,
                phase_details=new_phase_details(definition, first_phase, now),
                approval_gates=self.gates.initial_gates(definition),
                parallel_mode=parallel,
                dry_run=dry_run,
            )
            self._save(state)

        logger.info(f"Started {workflow_type} workflow {state.workflow_id} at phase: {first_phase}")
        return state

    def current(self) -> Optional[WorkflowState]:
        """The live instance, or None when there is no active workflow."""
        return self._load("current")

    def update_progress(
        self,
        progress_percentage: Optional[int] = None,
        artifacts_created: Optional[int] = None,
        artifacts_total: Optional[int] = None,
        active_workers: Optional[list[Union[str, WorkerStatus]]] = None,
        estimated_time_remaining: Optional[str] = None,
    ) -> WorkflowState:
        """
        Apply a partial update to the current phase's details.

        When artifacts_total is positive the percentage is derived from the
        artifact counts; an explicit progress_percentage otherwise wins.
        The result is clamped to 0..100. An automatic checkpoint is taken
        when a trigger fires. Workers reported without a last_update are
        stamped with the current time.
        """
        with self.store.locked():
            state = self._require("update_progress")
            if state.awaiting_approval:
                raise ApprovalGateError(
                    f"Workflow is awaiting approval at gate: {state.awaiting_approval}",
                    gate=state.awaiting_approval,
                    workflow_id=state.workflow_id,
                )

            now = self.clock()
            details = state.phase_details
            previous = details.progress_percentage
            if artifacts_created is not None:
                details.artifacts_created = max(artifacts_created, 0)
            if artifacts_total is not None:
                details.artifacts_total = max(artifacts_total, 0)
            if active_workers is not None:
                details.active_workers = [
                    w if isinstance(w, WorkerStatus) else WorkerStatus(name=w)
                    for w in active_workers
                ]
                for worker in details.active_workers:
                    worker.last_update = worker.last_update or now
            if estimated_time_remaining is not None:
                details.estimated_time_remaining = estimated_time_remaining

            if artifacts_created is not None or artifacts_total is not None:
                if details.artifacts_total > 0:
                    progress_percentage = round(details.artifacts_created / details.artifacts_total * 100)
            if progress_percentage is not None:
                details.progress_percentage = min(max(int(progress_percentage), 0), 100)
            if details.progress_percentage != previous:
                details.progress_changed_at = now

            self.checkpoints.maybe_checkpoint(state)
            self._save(state)

        logger.debug(f"Phase {state.current_phase} progress: {state.phase_details.progress_percentage}%")
        return state

    def complete_phase(self, results: Optional[dict[str, Any]] = None) -> WorkflowState:
        """
        Mark the current phase complete and move the state machine on.

        If an unresolved gate follows the phase (or safe mode is on) the
        instance parks on that gate. Otherwise it advances to the next phase,
        or completes, archives and removes the live instance after the last
        phase.

        Raises:
            ApprovalGateError: If the instance is already awaiting approval
        """
        with self.store.locked():
            state = self._require("complete_phase")
            if state.awaiting_approval:
                raise ApprovalGateError(
                    f"Workflow is awaiting approval at gate: {state.awaiting_approval}",
                    gate=state.awaiting_approval,
                    workflow_id=state.workflow_id,
                )

            definition = self.registry.get(state.workflow_type)
            phase = state.current_phase
            now = self.clock()

            if phase not in state.phases_completed:
                state.phases_completed.append(phase)
            state.phase_details.progress_percentage = 100
            state.phase_details.status = PhaseRunStatus.COMPLETED
            logger.info(f"Completed phase: {phase}")

            gate = self.gates.gate_for_phase(state, definition, phase)
            if gate is not None:
                self.gates.request(state, gate, now)
            elif state.current_phase_index + 1 < len(definition.phases):
                state.enter_phase(definition, state.current_phase_index + 1, now)
                logger.info(f"Advanced to phase: {state.current_phase}")
            else:
                return self._finish(state, now)

            self.checkpoints.maybe_checkpoint(state, phase_completed=True, results=results)
            self._save(state)

        return state

    def _finish(self, state: WorkflowState, now: datetime) -> WorkflowState:
        state.completed = True
        state.completed_at = now
        state.can_resume = False
        state.touch(now)
        archive_id = self.store.archive(state, "completed")
        self.store.delete()
        logger.info(f"Workflow {state.workflow_id} completed (archived as {archive_id})")
        return state

    def resume(self) -> dict:
        """
        Check whether the live instance can continue.

        Returns:
            Dict with `success`, `message` and, when resumable, the phase to
            continue from
        """
        state = self._load("resume")
        if state is None or not state.can_resume:
            if state is not None and state.awaiting_approval:
                message = f"Workflow is awaiting approval at gate: {state.awaiting_approval}"
            else:
                message = "No resumable workflow found"
            return {
                "success": False,
                "message": message,
                "awaiting_approval": state.awaiting_approval if state else None,
                "gate_timeout": self._gate_timeout_dict(state),
            }

        logger.info(f"Resuming workflow {state.workflow_id} at phase: {state.current_phase}")
        return {
            "success": True,
            "message": f"Resuming {state.workflow_type} workflow at phase: {state.current_phase}",
            "workflow_id": state.workflow_id,
            "current_phase": state.current_phase,
            "phase_progress": state.phase_details.progress_percentage,
            "safe_mode": state.in_safe_mode,
        }

    def status(self) -> dict:
        """Get a comprehensive status report."""
        state = self._load("status")
        if state is None:
            return {"active": False, "message": "No active workflow"}

        definition = self.registry.get(state.workflow_type)
        total = len(definition.phases)
        done = len(state.phases_completed)
        approved, skipped = self.gates.counts(state)

        remaining_phases = [
            {
                "id": phase,
                "name": definition.display_name(phase),
                "estimated_duration": definition.phase_durations.get(phase),
            }
            for phase in definition.phases[state.current_phase_index + 1:]
        ]

        return {
            "active": True,
            "workflow_id": state.workflow_id,
            "workflow_type": state.workflow_type,
            "current_phase": state.current_phase,
            "current_phase_name": definition.display_name(state.current_phase),
            "phase_index": state.current_phase_index,
            "phase_progress": state.phase_details.progress_percentage,
            "phase_status": state.phase_details.status.value,
            "overall_progress": round(done / total * 100),
            "phases_completed": done,
            "phases_total": total,
            "active_workers": [w.model_dump(mode="json") for w in state.phase_details.active_workers],
            "skipped_workers": [w.model_dump(mode="json") for w in state.skipped_workers],
            "awaiting_approval": state.awaiting_approval,
            "gate_timeout": self._gate_timeout_dict(state),
            "gates_approved": approved,
            "gates_skipped": skipped,
            "can_resume": state.can_resume,
            "safe_mode": state.in_safe_mode,
            "parallel_mode": state.parallel_mode,
            "dry_run": state.dry_run,
            "total_checkpoints": state.checkpoint_meta.total_checkpoints,
            "remaining_phases": remaining_phases,
            "started_at": state.started_at.isoformat(),
            "updated_at": state.updated_at.isoformat(),
        }

    # ========================================================================
    # Approval gates
    # ========================================================================

    def pending_gate(self) -> Optional[str]:
        state = self._load("pending_gate")
        return self.gates.pending_gate(state) if state else None

    def check_gate_timeout(self) -> Optional[GateTimeoutStatus]:
        """Poll the pending gate for a timeout. Never resolves the gate."""
        state = self._load("check_gate_timeout")
        if state is None:
            return None
        status = self.gates.check_timeout(state, self.clock())
        if status is not None and status.timed_out:
            logger.warning(status.message)
        return status

    def _gate_timeout_dict(self, state: Optional[WorkflowState]) -> Optional[dict]:
        if state is None:
            return None
        status = self.gates.check_timeout(state, self.clock())
        return status.to_dict() if status else None

    def approve_gate(self, gate: str, modifications: Optional[dict[str, Any]] = None) -> WorkflowState:
        """
        Approve the pending gate and advance to the phase after it.

        Raises:
            ApprovalGateError: If `gate` is not the gate being awaited
        """
        with self.store.locked():
            state = self._require("approve_gate")
            definition = self.registry.get(state.workflow_type)
            self.gates.approve(state, definition, gate, modifications)
            self._save(state)
        return state

    def skip_gate(self, gate: Optional[str] = None, reason: Optional[str] = None) -> WorkflowState:
        """
        Bypass the pending gate (the awaited one when `gate` is None).

        Raises:
            ApprovalGateError: If nothing is awaited or `gate` is not awaited
        """
        with self.store.locked():
            state = self._require("skip_gate")
            gate = gate or state.awaiting_approval
            if gate is None:
                raise ApprovalGateError(
                    "No approval gate is pending",
                    workflow_id=state.workflow_id,
                )
            definition = self.registry.get(state.workflow_type)
            self.gates.skip(state, definition, gate, reason or "Skipped by operator")
            self._save(state)
        return state

    # ========================================================================
    # Checkpoints
    # ========================================================================

    def save_checkpoint(self, note: Optional[str] = None, name: Optional[str] = None) -> CheckpointData:
        """Take a manual checkpoint of the live instance."""
        with self.store.locked():
            state = self._require("save_checkpoint")
            checkpoint = self.checkpoints.create(state, CheckpointTrigger.MANUAL, name=name, note=note)
            self._save(state)
        logger.info(
            f"Workflow state saved at {state.current_phase} "
            f"({state.phase_details.progress_percentage}% complete)"
        )
        return checkpoint

    def list_checkpoints(self, all_workflows: bool = False) -> list[CheckpointData]:
        """Checkpoints of the live workflow (or all of them), newest first."""
        if all_workflows:
            return self.checkpoints.list()
        state = self._load("list_checkpoints")
        return self.checkpoints.list(state.workflow_id if state else None)

    def restore_checkpoint(self, name: Optional[str] = None) -> RecoveryResult:
        """
        Replace the live instance with a named checkpoint, or the latest one.

        While a workflow is live, "latest" means its own latest checkpoint,
        and the live instance is written to a safety backup before it is
        replaced. Without a live workflow the latest checkpoint overall is
        used.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist
            StateCorruptionError: If the checkpoint does not validate
        """
        with self.store.locked():
            try:
                current = self.store.load()
            except WorkflowError as e:
                logger.warning(f"Live state unreadable: {e.message}")
                current = None
            workflow_id = current.workflow_id if current else None
            result = self.recovery.restore_latest_checkpoint(workflow_id=workflow_id, name=name, backup=True)
            if result.success and current is not None and result.state.workflow_id != current.workflow_id:
                logger.warning(
                    f"Workflow {current.workflow_id} replaced by checkpoint of {result.state.workflow_id} "
                    f"(backup: {result.details.get('backup_id')})"
                )
        if not result.success:
            if "validation_errors" in result.details:
                raise StateCorruptionError(result.message, **result.details)
            raise CheckpointNotFoundError(result.message, checkpoint_id=name)
        logger.info(result.message)
        return result

    # ========================================================================
    # Resets
    # ========================================================================

    def reset_phase(self) -> RecoveryResult:
        """Restart the current phase, keeping completed phases and history."""
        with self.store.locked():
            self._require("reset_phase")
            result = self.recovery.reset_phase()
        logger.info(result.message)
        return result

    def reset_workflow(self) -> dict:
        """
        Discard the live instance after writing one safety backup.

        The instance is also archived to history with reason "reset".
        """
        with self.store.locked():
            try:
                state = self._load("reset_workflow")
            except StateCorruptionError:
                state = None
                logger.warning("Live state is unrecoverable; resetting without a backup")

            if state is None and not self.store.exists():
                raise NoActiveWorkflowError("No active workflow to reset")

            backup_id = archive_id = None
            if state is not None:
                backup_id = self.store.write_backup(state, "backup-before-reset")
                archive_id = self.store.archive(state, "reset")
            self.store.delete()

        logger.warning(f"Workflow reset{f' (backup: {backup_id})' if backup_id else ''}")
        return {
            "success": True,
            "message": "Workflow reset. Start a new workflow to continue.",
            "backup_id": backup_id,
            "archive_id": archive_id,
        }

    # ========================================================================
    # Recovery actions
    # ========================================================================

    def enter_safe_mode(self, reason: str = "Operator request") -> RecoveryResult:
        with self.store.locked():
            self._require("enter_safe_mode")
            result = self.recovery.enter_safe_mode(reason)
        logger.warning(f"{result.message}: {reason}")
        return result

    def exit_safe_mode(self) -> RecoveryResult:
        with self.store.locked():
            self._require("exit_safe_mode")
            result = self.recovery.exit_safe_mode()
        logger.info(result.message)
        return result

    def skip_worker(self, worker_name: str, reason: Optional[str] = None) -> RecoveryResult:
        with self.store.locked():
            self._require("skip_worker")
            result = self.recovery.skip_worker(worker_name, reason or "Skipped by operator")
        logger.info(result.message)
        return result

    def retry_worker(self, worker_name: str) -> RecoveryResult:
        with self.store.locked():
            self._require("retry_worker")
            result = self.recovery.retry_worker(worker_name)
        logger.info(result.message)
        return result

    def mark_phase_running(self, phase: str, attempt: int) -> WorkflowState:
        """Record that a worker attempt for `phase` is starting."""
        with self.store.locked():
            state = self._require("run_phase")
            definition = self.registry.get(state.workflow_type)
            definition.require_phase(phase)
            if state.current_phase != phase:
                raise InvalidPhaseError(
                    f"Cannot run phase '{phase}': current phase is '{state.current_phase}'",
                    phase=phase,
                    current_phase=state.current_phase,
                )
            if state.awaiting_approval:
                raise ApprovalGateError(
                    f"Workflow is awaiting approval at gate: {state.awaiting_approval}",
                    gate=state.awaiting_approval,
                    workflow_id=state.workflow_id,
                )
            state.phase_details.status = PhaseRunStatus.ACTIVE
            state.phase_details.attempts = attempt
            self._save(state)
        return state

    def mark_phase_status(self, status: PhaseRunStatus) -> WorkflowState:
        with self.store.locked():
            state = self._require("run_phase")
            state.phase_details.status = status
            self._save(state)
        return state

    # ========================================================================
    # Import / export / validation
    # ========================================================================

    def export_state(self, file_path: Optional[Union[str, Path]] = None) -> Path:
        """
        Write the live instance to a standalone JSON file.

        Defaults to workflow-export-<id>.json in the current directory.
        """
        state = self._require("export_state")
        path = Path(file_path) if file_path else Path(f"workflow-export-{state.workflow_id}.json")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(state.model_dump(mode="json"), f, indent=2)
        except OSError as e:
            raise FileAccessError(f"Failed to export workflow state: {e}", retryable=False, path=str(path))
        logger.info(f"Workflow state exported to {path}")
        return path

    def import_state(self, file_path: Union[str, Path]) -> WorkflowState:
        """
        Replace the live instance with one read from a JSON file.

        The imported instance is validated before anything changes; the
        current instance, if any, is backed up first.

        Raises:
            FileAccessError: If the file cannot be read
            StateCorruptionError: If the file does not hold a valid instance
        """
        path = Path(file_path)
        try:
            with open(path) as f:
                data = json.load(f)
        except OSError as e:
            raise FileAccessError(f"Failed to read {path}: {e}", retryable=False, path=str(path))
        except json.JSONDecodeError as e:
            raise StateCorruptionError(f"{path.name} is not valid JSON: {e}", path=str(path))

        if isinstance(data, dict) and isinstance(data.get("state"), dict) and "workflow_id" not in data:
            # Archived history entries wrap the instance
            data = data["state"]
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if not k.startswith('_')}

        try:
            imported = WorkflowState.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(f"{path.name} does not describe a valid workflow: {e}", path=str(path))

        problems = self.recovery.validate(imported)
        if problems:
            raise StateCorruptionError(
                f"Imported workflow failed validation: {'; '.join(problems)}",
                path=str(path),
                validation_errors=problems,
            )

        with self.store.locked():
            try:
                current = self.store.load()
            except WorkflowError as e:
                logger.warning(f"Current state unreadable, importing without backup: {e.message}")
                current = None
            if current is not None:
                self.store.write_backup(current, "backup-before-import")
            self.store.save(imported)

        logger.info(f"Imported workflow {imported.workflow_id} from {path}")
        return imported

    def validate_state(self) -> tuple[bool, list[str]]:
        """
        Check the stored instance without triggering recovery.

        Returns:
            Tuple of (is_valid, problems)
        """
        ok, problems = self.store.verify_integrity()
        if not ok:
            return False, problems
        try:
            state = self.store.load()
        except WorkflowError as e:
            return False, [e.message]
        if state is None:
            return True, []
        problems = self.recovery.validate(state)
        return len(problems) == 0, problems
