"""
Error Recovery Engine

Classifies failures into the closed ErrorKind taxonomy, maps each kind to a
recovery strategy, runs the strategy and keeps a durable record of the
incident and its outcome.

Every incident is written to the error log before recovery is attempted and
rewritten with the outcome afterwards. A strategy that itself raises turns
into a RecoveryFailedError, which always maps to manual intervention.
"""

import logging
import secrets
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .approval_gate import ApprovalGateManager, SAFE_MODE_GATE
from .checkpoint import CheckpointManager
from .errors import (
    CheckpointNotFoundError,
    ErrorKind,
    FileAccessError,
    InvalidWorkflowTypeError,
    NetworkError,
    NoActiveWorkflowError,
    RecoveryFailedError,
    RecoveryStrategy,
    RetryPolicy,
    WorkflowAlreadyActiveError,
    WorkflowError,
    WorkflowValidationError,
)
from .registry import WorkflowRegistry
from .schema import (
    ErrorContext,
    ErrorRecord,
    RecoveryOutcome,
    SafeModeState,
    SkippedWorker,
    WorkerStatus,
    WorkflowState,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)

CLI = "phaseflow"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryDirective:
    """Tells the caller to run the failed operation again."""
    attempt: int
    max_retries: int
    delay_seconds: float


@dataclass
class RecoveryContext:
    """Where a failure happened and how many attempts were already made."""
    workflow_id: Optional[str] = None
    workflow_type: Optional[str] = None
    current_phase: Optional[str] = None
    phase_index: Optional[int] = None
    operation: Optional[str] = None
    attempt: int = 0
    max_retries: int = 3

    @classmethod
    def from_state(
        cls,
        state: Optional[WorkflowState],
        operation: Optional[str] = None,
        attempt: int = 0,
        max_retries: int = 3,
    ) -> "RecoveryContext":
        if state is None:
            return cls(operation=operation, attempt=attempt, max_retries=max_retries)
        return cls(
            workflow_id=state.workflow_id,
            workflow_type=state.workflow_type,
            current_phase=state.current_phase,
            phase_index=state.current_phase_index,
            operation=operation,
            attempt=attempt,
            max_retries=max_retries,
        )


@dataclass
class RecoveryResult:
    """Outcome of a recovery strategy."""
    strategy: RecoveryStrategy
    success: bool
    message: str
    retry: Optional[RetryDirective] = None
    instructions: list[str] = field(default_factory=list)
    state: Optional[WorkflowState] = None
    details: dict[str, Any] = field(default_factory=dict)
    incident_id: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.strategy == RecoveryStrategy.RETRY_OPERATION and self.success and self.retry is not None

    @property
    def recovered(self) -> bool:
        """The workflow was repaired in place (no retry, no operator needed)."""
        return self.success and self.strategy not in (
            RecoveryStrategy.RETRY_OPERATION,
            RecoveryStrategy.MANUAL_INTERVENTION,
        )

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy.value,
            "success": self.success,
            "message": self.message,
            "retry": None if self.retry is None else {
                "attempt": self.retry.attempt,
                "max_retries": self.retry.max_retries,
                "delay_seconds": self.retry.delay_seconds,
            },
            "instructions": list(self.instructions),
            "current_phase": self.state.current_phase if self.state else None,
            "details": self.details,
            "incident_id": self.incident_id,
        }


def _file_access_strategy(error: WorkflowError) -> RecoveryStrategy:
    if getattr(error, "retryable", False):
        return RecoveryStrategy.RETRY_OPERATION
    return RecoveryStrategy.MANUAL_INTERVENTION


def _worker_failure_strategy(error: WorkflowError) -> RecoveryStrategy:
    if getattr(error, "critical", False):
        return RecoveryStrategy.MANUAL_INTERVENTION
    return RecoveryStrategy.SKIP_WORKER


# One entry per ErrorKind; test_recovery checks the table is exhaustive
STRATEGY_TABLE: dict[ErrorKind, Callable[[WorkflowError], RecoveryStrategy]] = {
    ErrorKind.STATE_CORRUPTION: lambda e: RecoveryStrategy.RESTORE_CHECKPOINT,
    ErrorKind.FILE_ACCESS: _file_access_strategy,
    ErrorKind.INVALID_PHASE: lambda e: RecoveryStrategy.RESET_PHASE,
    ErrorKind.INVALID_WORKFLOW_TYPE: lambda e: RecoveryStrategy.MANUAL_INTERVENTION,
    ErrorKind.APPROVAL_GATE: lambda e: RecoveryStrategy.SAFE_MODE,
    ErrorKind.WORKER_FAILURE: _worker_failure_strategy,
    ErrorKind.NETWORK_ERROR: lambda e: RecoveryStrategy.RETRY_OPERATION,
    ErrorKind.VALIDATION_ERROR: lambda e: RecoveryStrategy.SAFE_MODE,
    ErrorKind.RECOVERY_FAILED: lambda e: RecoveryStrategy.MANUAL_INTERVENTION,
    ErrorKind.UNKNOWN: lambda e: RecoveryStrategy.SAFE_MODE,
}


class ErrorRecoveryEngine:
    """
    Classify, log and recover from workflow failures.

    The strategy primitives (restore_latest_checkpoint, reset_phase,
    skip_worker, retry_worker, enter_safe_mode, exit_safe_mode) are public so
    operator commands reuse exactly what automatic recovery does.
    """

    def __init__(
        self,
        store: StateStore,
        registry: WorkflowRegistry,
        checkpoints: CheckpointManager,
        gates: ApprovalGateManager,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utc_now,
        state_location: str = ".phaseflow",
    ):
        self.store = store
        self.registry = registry
        self.checkpoints = checkpoints
        self.gates = gates
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.state_location = state_location

    # ========================================================================
    # Classification
    # ========================================================================

    def classify(self, exc: BaseException) -> WorkflowError:
        """Convert any exception into a WorkflowError."""
        if isinstance(exc, WorkflowError):
            return exc

        if isinstance(exc, ValidationError):
            error: WorkflowError = WorkflowValidationError(
                f"Validation failed: {exc.error_count()} error(s)",
                validation_errors=[err['msg'] for err in exc.errors()],
            )
        elif isinstance(exc, (ConnectionError, TimeoutError)):
            error = NetworkError(str(exc) or type(exc).__name__)
        elif isinstance(exc, PermissionError):
            error = FileAccessError(str(exc), retryable=False)
        elif isinstance(exc, OSError):
            error = FileAccessError(str(exc), retryable=True)
        else:
            error = WorkflowError(str(exc) or type(exc).__name__)

        error.details.setdefault("original_type", type(exc).__name__)
        error.__cause__ = exc
        return error

    def strategy_for(self, error: WorkflowError) -> RecoveryStrategy:
        return STRATEGY_TABLE[error.kind](error)

    # ========================================================================
    # Handling
    # ========================================================================

    def handle(self, exc: BaseException, context: Optional[RecoveryContext] = None) -> RecoveryResult:
        """
        Log an error, run its recovery strategy and record the outcome.

        Never raises for a failing strategy: that becomes a RecoveryFailedError
        which is handled (manual intervention) in turn.

        Returns:
            RecoveryResult, also attached to the error as `error.recovery`
        """
        error = self.classify(exc)
        context = context or RecoveryContext()
        strategy = self.strategy_for(error)

        record = ErrorRecord(
            incident_id=secrets.token_hex(6),
            kind=error.kind.value,
            message=error.message,
            details=error.to_dict()["details"],
            stack=self._format_stack(exc),
            context=ErrorContext(
                workflow_id=context.workflow_id,
                workflow_type=context.workflow_type,
                current_phase=context.current_phase,
                phase_index=context.phase_index,
                operation=context.operation,
                timestamp=self.clock(),
            ),
            recovery=RecoveryOutcome(strategy=strategy.value),
        )

        logger.error(
            f"{error.kind.value}: {error.message} "
            f"(workflow {context.workflow_id or '-'}, phase {context.current_phase or '-'})"
        )
        self._write_record(record)
        logger.warning(f"Recovery strategy for {error.kind.value}: {strategy.value}")

        try:
            result = self._run_strategy(strategy, error, context)
        except Exception as strategy_exc:
            record.recovery.attempted = True
            record.recovery.succeeded = False
            record.recovery.error = str(strategy_exc)
            self._write_record(record)

            failure = RecoveryFailedError(
                f"Recovery failed: {strategy_exc}",
                original_kind=error.kind.value,
                strategy=strategy.value,
                incident_id=record.incident_id,
            )
            failure.__cause__ = strategy_exc
            result = self.handle(failure, context)
            error.recovery = result
            return result

        if not result.success and not result.instructions:
            result.instructions = self.manual_instructions(error)
        result.incident_id = record.incident_id

        record.recovery.attempted = True
        record.recovery.succeeded = result.success
        record.recovery.message = result.message
        if result.state is not None:
            record.recovery.resulting_phase = result.state.current_phase
            record.recovery.resulting_state = {
                "current_phase": result.state.current_phase,
                "current_phase_index": result.state.current_phase_index,
                "awaiting_approval": result.state.awaiting_approval,
                "can_resume": result.state.can_resume,
                "safe_mode": result.state.in_safe_mode,
            }
        self._write_record(record)

        if strategy == RecoveryStrategy.MANUAL_INTERVENTION:
            logger.error(
                "Manual intervention required:\n" + "\n".join(f"  {line}" for line in result.instructions)
            )
        elif result.success:
            logger.info(f"Recovery succeeded ({strategy.value}): {result.message}")
        else:
            logger.warning(f"Recovery unsuccessful ({strategy.value}): {result.message}")

        error.recovery = result
        return result

    def _run_strategy(
        self,
        strategy: RecoveryStrategy,
        error: WorkflowError,
        context: RecoveryContext,
    ) -> RecoveryResult:
        if strategy == RecoveryStrategy.RESTORE_CHECKPOINT:
            return self.restore_latest_checkpoint(context.workflow_id)
        if strategy == RecoveryStrategy.RESET_PHASE:
            return self.reset_phase()
        if strategy == RecoveryStrategy.SKIP_WORKER:
            return self.skip_worker(getattr(error, "worker_name", None), reason=error.message)
        if strategy == RecoveryStrategy.RETRY_OPERATION:
            return self.retry_operation(context)
        if strategy == RecoveryStrategy.SAFE_MODE:
            return self.enter_safe_mode(reason=f"Error recovery: {error.kind.value}")
        return RecoveryResult(
            strategy=RecoveryStrategy.MANUAL_INTERVENTION,
            success=False,
            message="Manual intervention required",
            instructions=self.manual_instructions(error),
        )

    def _write_record(self, record: ErrorRecord) -> None:
        # The error log must not mask the error being handled
        try:
            self.store.write_error_record(record)
        except OSError as e:
            logger.error(f"Could not write error record {record.incident_id}: {e}")

    @staticmethod
    def _format_stack(exc: BaseException) -> Optional[str]:
        if exc.__traceback__ is None:
            return None
        return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, state: WorkflowState) -> list[str]:
        """
        Check a loaded instance against the workflow invariants.

        Returns:
            List of problems (empty when the instance is valid)
        """
        problems = []

        if state.workflow_type not in self.registry:
            problems.append(f"Invalid workflow_type: {state.workflow_type}")
            return problems
        definition = self.registry.get(state.workflow_type)
        phase_count = len(definition.phases)

        index = state.current_phase_index
        if index < 0 or index >= phase_count:
            problems.append(f"Invalid current_phase_index: {index} (workflow has {phase_count} phases)")
        elif definition.phases[index] != state.current_phase:
            problems.append(
                f"current_phase '{state.current_phase}' does not match phase index {index} "
                f"('{definition.phases[index]}')"
            )

        if len(state.phases_completed) > index + 1:
            problems.append("Phase completion count exceeds current phase index")
        for phase in state.phases_completed:
            if definition.phase_index(phase) < 0:
                problems.append(f"Unknown completed phase: {phase}")

        gate = state.awaiting_approval
        if gate is not None:
            if gate not in definition.approval_gates and gate != SAFE_MODE_GATE:
                problems.append(f"Awaiting unknown approval gate: {gate}")
            if state.can_resume:
                problems.append("Workflow is awaiting approval but marked resumable")

        return problems

    # ========================================================================
    # Strategy primitives
    # ========================================================================

    def _require_state(self) -> WorkflowState:
        state = self.store.load()
        if state is None:
            raise NoActiveWorkflowError()
        return state

    def restore_latest_checkpoint(
        self,
        workflow_id: Optional[str] = None,
        name: Optional[str] = None,
        backup: bool = False,
    ) -> RecoveryResult:
        """
        Replace the live instance with the latest (or named) checkpoint.

        Args:
            workflow_id: Restrict "latest" to this workflow's checkpoints
            name: Checkpoint id; overrides the "latest" lookup
            backup: Write a safety backup of a readable live instance first
        """
        try:
            checkpoint = self.checkpoints.find(name, workflow_id=workflow_id)
        except CheckpointNotFoundError as e:
            return RecoveryResult(
                strategy=RecoveryStrategy.RESTORE_CHECKPOINT,
                success=False,
                message=e.message,
            )

        state = checkpoint.state_snapshot
        problems = self.validate(state)
        if problems:
            return RecoveryResult(
                strategy=RecoveryStrategy.RESTORE_CHECKPOINT,
                success=False,
                message=f"Checkpoint {checkpoint.checkpoint_id} failed validation: {'; '.join(problems)}",
                details={"checkpoint": checkpoint.checkpoint_id, "validation_errors": problems},
            )

        backup_id = self._backup_live_state("backup-before-restore") if backup else None
        self.checkpoints.restore(checkpoint.checkpoint_id)

        details = {"checkpoint": checkpoint.checkpoint_id, "restored_phase": state.current_phase}
        if backup_id:
            details["backup_id"] = backup_id
        return RecoveryResult(
            strategy=RecoveryStrategy.RESTORE_CHECKPOINT,
            success=True,
            message=f"Restored from checkpoint: {checkpoint.checkpoint_id}",
            state=state,
            details=details,
        )

    def _backup_live_state(self, label: str) -> Optional[str]:
        try:
            current = self.store.load()
        except WorkflowError as e:
            logger.warning(f"Live state unreadable, no backup written: {e.message}")
            return None
        if current is None:
            return None
        return self.store.write_backup(current, label)

    def reset_phase(self) -> RecoveryResult:
        """
        Restart the current phase from zero progress.

        phases_completed is left alone. A pending gate for this phase is
        released so the phase can be redone.
        """
        state = self._require_state()
        definition = self.registry.get(state.workflow_type)
        index = min(max(state.current_phase_index, 0), len(definition.phases) - 1)

        state.enter_phase(definition, index, self.clock())
        if state.awaiting_approval:
            state.awaiting_approval = None
            state.can_resume = True
        state.touch(self.clock())
        self.store.save(state)

        return RecoveryResult(
            strategy=RecoveryStrategy.RESET_PHASE,
            success=True,
            message=f"Reset phase: {state.current_phase}",
            state=state,
            details={"phase": state.current_phase},
        )

    def skip_worker(self, worker_name: Optional[str], reason: Optional[str] = None) -> RecoveryResult:
        """Record a worker as skipped and drop it from the active workers."""
        if not worker_name:
            return RecoveryResult(
                strategy=RecoveryStrategy.SKIP_WORKER,
                success=False,
                message="No worker information available to skip",
            )

        state = self._require_state()
        now = self.clock()
        state.skipped_workers.append(SkippedWorker(
            name=worker_name,
            phase=state.current_phase,
            reason=reason or "Skipped by operator",
            timestamp=now,
        ))
        state.phase_details.active_workers = [
            w for w in state.phase_details.active_workers if w.name != worker_name
        ]
        state.touch(now)
        self.store.save(state)

        return RecoveryResult(
            strategy=RecoveryStrategy.SKIP_WORKER,
            success=True,
            message=f"Skipped worker: {worker_name}",
            state=state,
            details={
                "skipped_worker": worker_name,
                "remaining_workers": [w.name for w in state.phase_details.active_workers],
            },
        )

    def retry_worker(self, worker_name: str) -> RecoveryResult:
        """Put a skipped or failed worker back on the current phase."""
        state = self._require_state()
        before = len(state.skipped_workers)
        state.skipped_workers = [
            s for s in state.skipped_workers
            if not (s.name == worker_name and s.phase == state.current_phase)
        ]
        now = self.clock()
        existing = next((w for w in state.phase_details.active_workers if w.name == worker_name), None)
        if existing is None:
            state.phase_details.active_workers.append(
                WorkerStatus(name=worker_name, status="retrying", last_update=now)
            )
        else:
            existing.status = "retrying"
            existing.last_update = now
        state.touch(now)
        self.store.save(state)

        return RecoveryResult(
            strategy=RecoveryStrategy.RETRY_OPERATION,
            success=True,
            message=f"Worker {worker_name} scheduled for retry",
            state=state,
            details={"worker": worker_name, "was_skipped": len(state.skipped_workers) < before},
        )

    def retry_operation(self, context: RecoveryContext) -> RecoveryResult:
        """Decide whether another attempt is allowed and how long to wait."""
        if context.attempt >= context.max_retries:
            return RecoveryResult(
                strategy=RecoveryStrategy.RETRY_OPERATION,
                success=False,
                message=f"Max retries ({context.max_retries}) exceeded",
                details={"retries": context.attempt},
            )

        return RecoveryResult(
            strategy=RecoveryStrategy.RETRY_OPERATION,
            success=True,
            message="Retry operation",
            retry=RetryDirective(
                attempt=context.attempt + 1,
                max_retries=context.max_retries,
                delay_seconds=self.retry_policy.delay_for(context.attempt),
            ),
        )

    def enter_safe_mode(self, reason: str = "Error recovery") -> RecoveryResult:
        """Disable parallel workers and gate every phase transition."""
        state = self._require_state()
        if state.in_safe_mode:
            return RecoveryResult(
                strategy=RecoveryStrategy.SAFE_MODE,
                success=True,
                message="Already in safe mode",
                state=state,
                details={"restrictions": list(state.safe_mode.restrictions)},
            )

        now = self.clock()
        state.safe_mode = SafeModeState(
            reason=reason,
            entered_at=now,
            original_parallel_mode=state.parallel_mode,
        )
        state.parallel_mode = False
        state.touch(now)
        self.store.save(state)

        return RecoveryResult(
            strategy=RecoveryStrategy.SAFE_MODE,
            success=True,
            message="Entered safe mode",
            state=state,
            details={"restrictions": list(state.safe_mode.restrictions)},
        )

    def exit_safe_mode(self) -> RecoveryResult:
        """
        Leave safe mode and restore the original parallel setting.

        A transition parked only because of safe mode is released.
        """
        state = self._require_state()
        if not state.in_safe_mode:
            return RecoveryResult(
                strategy=RecoveryStrategy.SAFE_MODE,
                success=False,
                message="Workflow is not in safe mode",
                state=state,
            )

        state.parallel_mode = state.safe_mode.original_parallel_mode
        state.safe_mode = None
        if state.awaiting_approval == SAFE_MODE_GATE:
            definition = self.registry.get(state.workflow_type)
            self.gates.skip(state, definition, SAFE_MODE_GATE, reason="Safe mode exited")
        state.touch(self.clock())
        self.store.save(state)

        return RecoveryResult(
            strategy=RecoveryStrategy.SAFE_MODE,
            success=True,
            message="Exited safe mode. Normal operations resumed.",
            state=state,
            details={"parallel_mode": state.parallel_mode},
        )

    # ========================================================================
    # Operator guidance
    # ========================================================================

    def manual_instructions(self, error: WorkflowError) -> list[str]:
        """Numbered next steps for an error that needs an operator."""
        recover = f"{CLI} workflow-recovery"

        if isinstance(error, NoActiveWorkflowError):
            return [
                f"1. Run: {CLI} list-types",
                f"2. Run: {CLI} start <type>",
                f"3. Run: {recover} --import-state <file>",
            ]
        if isinstance(error, WorkflowAlreadyActiveError):
            return [
                f"1. Run: {CLI} status",
                f"2. Run: {CLI} resume",
                f"3. Run: {recover} --reset-workflow",
            ]
        if isinstance(error, InvalidWorkflowTypeError):
            return [
                f"1. Run: {CLI} list-types",
                "2. Check workflows_file in phaseflow.yaml",
                f"3. Run: {recover} --reset-workflow",
            ]

        kind = error.kind
        if kind == ErrorKind.STATE_CORRUPTION:
            return [
                f"1. Run: {recover} --restore-checkpoint",
                f"2. Run: {recover} --reset-workflow",
                f"3. Manually edit the state file in {self.state_location}/state.json",
            ]
        if kind == ErrorKind.APPROVAL_GATE:
            return [
                f"1. Run: {recover} --skip-approval",
                f"2. Run: {recover} --reset-phase",
                "3. Contact the stakeholder for approval",
            ]
        if kind == ErrorKind.WORKER_FAILURE:
            worker = getattr(error, "worker_name", None) or "<name>"
            return [
                f"1. Run: {recover} --skip-agent {worker}",
                f"2. Run: {recover} --retry-agent {worker}",
                f"3. Manually complete the tasks of worker \"{worker}\"",
            ]
        if kind == ErrorKind.FILE_ACCESS:
            return [
                f"1. Check that {self.state_location}/ exists and is writable",
                f"2. Run: {recover} --diagnostic",
                f"3. Run: {CLI} resume",
            ]
        return [
            f"1. Run: {recover} --diagnostic",
            f"2. Check logs in {self.state_location}/error-logs/",
            f"3. Run: {recover} --safe-mode",
        ]
