"""
Execution Wrapper

Runs the worker of the current phase under the error recovery engine:
failures are classified and handled, retryable ones are re-run after an
exponential backoff delay, and a successful (or recovered) run completes the
phase through the orchestrator.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .engine import WorkflowOrchestrator
from .errors import RecoveryStrategy, RetryPolicy, WorkerFailure
from .recovery import ErrorRecoveryEngine, RecoveryContext, RecoveryResult
from .schema import PhaseRunStatus, WorkflowState

logger = logging.getLogger(__name__)

# A worker receives the live instance and returns a result (or an exception)
Worker = Callable[[WorkflowState], Any]


@dataclass
class PhaseRunResult:
    """Outcome of ExecutionWrapper.run()."""
    phase: str
    result: Any
    recovered: bool
    attempts: int
    state: Optional[WorkflowState]
    recovery: Optional[RecoveryResult] = None


class ExecutionWrapper:
    """Runs phase workers with bounded retries and recovery."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        recovery: Optional[ErrorRecoveryEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.recovery = recovery or orchestrator.recovery
        self.retry_policy = retry_policy or self.recovery.retry_policy
        self.sleep = sleep

    def run(self, phase: str, worker: Worker) -> PhaseRunResult:
        """
        Run `worker` for `phase` and complete the phase on success.

        Args:
            phase: Phase id; must be the current phase
            worker: Callable taking the live WorkflowState

        Returns:
            PhaseRunResult

        Raises:
            InvalidPhaseError: If `phase` is not the current phase
            ApprovalGateError: If the instance is awaiting approval
            WorkerFailure: Retries exhausted (retryable=False)
            WorkflowError: A failure whose recovery needs an operator; its
                `instructions` list the next commands
        """
        attempt = 0
        while True:
            state = self.orchestrator.mark_phase_running(phase, attempt + 1)
            try:
                result = worker(state)
                if isinstance(result, Exception):
                    raise result
            except Exception as exc:
                context = RecoveryContext.from_state(
                    state,
                    operation=f"run_phase:{phase}",
                    attempt=attempt,
                    max_retries=self.retry_policy.max_retries,
                )
                outcome = self.recovery.handle(exc, context)

                if outcome.should_retry:
                    delay = outcome.retry.delay_seconds
                    logger.info(
                        f"Retrying phase {phase} in {delay:g}s "
                        f"(retry {outcome.retry.attempt}/{outcome.retry.max_retries})"
                    )
                    self.sleep(delay)
                    attempt += 1
                    continue

                if outcome.recovered:
                    return self._complete_after_recovery(phase, outcome, attempt + 1)

                self._mark_failed()
                error = self.recovery.classify(exc)
                if outcome.strategy == RecoveryStrategy.RETRY_OPERATION:
                    failure = WorkerFailure(
                        f"Phase {phase} failed after {attempt + 1} attempt(s): {error.message}",
                        worker_name=getattr(error, "worker_name", None),
                        retryable=False,
                        attempts=attempt + 1,
                        cause_kind=error.kind.value,
                    )
                    failure.recovery = outcome
                    raise failure from exc
                if error is exc:
                    raise
                raise error from exc

            self.orchestrator.mark_phase_status(PhaseRunStatus.COMPLETED)
            state = self.orchestrator.complete_phase(result if isinstance(result, dict) else None)
            return PhaseRunResult(phase=phase, result=result, recovered=False, attempts=attempt + 1, state=state)

    def _complete_after_recovery(self, phase: str, outcome: RecoveryResult, attempts: int) -> PhaseRunResult:
        """
        Advance past `phase` using the recovery result instead of the
        worker's, unless recovery moved the instance elsewhere. Safe mode
        leaves the phase in place to be re-run under its restrictions.
        """
        state = self.orchestrator.current()
        if outcome.strategy == RecoveryStrategy.SAFE_MODE:
            self._mark_failed()
            state = self.orchestrator.current()
            logger.info(f"Phase {phase} left in place after entering safe mode")
            return PhaseRunResult(
                phase=phase, result=None, recovered=True, attempts=attempts, state=state, recovery=outcome,
            )
        if state is None or state.current_phase != phase or state.awaiting_approval:
            logger.info(f"Recovery moved the workflow off phase {phase}; not completing it")
            return PhaseRunResult(
                phase=phase, result=None, recovered=True, attempts=attempts, state=state, recovery=outcome,
            )

        self.orchestrator.mark_phase_status(PhaseRunStatus.COMPLETED)
        state = self.orchestrator.complete_phase({"recovery": outcome.to_dict()})
        logger.info(f"Phase {phase} completed via recovery ({outcome.strategy.value})")
        return PhaseRunResult(
            phase=phase, result=None, recovered=True, attempts=attempts, state=state, recovery=outcome,
        )

    def _mark_failed(self) -> None:
        try:
            self.orchestrator.mark_phase_status(PhaseRunStatus.FAILED)
        except Exception as e:
            logger.warning(f"Could not record phase failure: {e}")
