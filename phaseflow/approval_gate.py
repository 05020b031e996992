"""
Approval gates between workflow phases.

A gate named in the workflow definition sits between its `after` and
`before` phases. Completing the `after` phase parks the instance on the gate
(awaiting_approval set, can_resume cleared) until an operator approves or
skips it, possibly from a different process. Timeouts are reported when
polled and never acted on automatically.

While safe mode is enabled every phase transition is parked on the
synthetic gate `safe-mode-transition`.
"""

import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import ApprovalGateError
from .schema import (
    ApprovalGateState,
    GateDecision,
    GateDecisionType,
    WorkflowDef,
    WorkflowState,
)

logger = logging.getLogger(__name__)

SAFE_MODE_GATE = "safe-mode-transition"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GateTimeoutStatus:
    """Result of polling the pending gate for a timeout."""
    gate: str
    timed_out: bool
    elapsed_minutes: int
    timeout_minutes: int
    remaining_minutes: int
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


class ApprovalGateManager:
    """
    State transitions for approval gates.

    Operates on a WorkflowState in place; persisting is the caller's job.
    """

    def __init__(self, default_timeout_minutes: int = 30, clock: Callable[[], datetime] = _utc_now):
        self.default_timeout_minutes = default_timeout_minutes
        self.clock = clock

    def initial_gates(self, definition: WorkflowDef) -> dict[str, ApprovalGateState]:
        """Fresh gate state for every gate in the definition."""
        return {
            name: ApprovalGateState(timeout_minutes=gate.timeout_minutes)
            for name, gate in definition.approval_gates.items()
        }

    def pending_gate(self, state: WorkflowState) -> Optional[str]:
        """The gate the instance is waiting on, if any."""
        return state.awaiting_approval

    def gate_for_phase(self, state: WorkflowState, definition: WorkflowDef, phase: str) -> Optional[str]:
        """
        Gate that must be resolved before leaving `phase`.

        The first unresolved definition gate with `after == phase` wins. In
        safe mode, any transition to a following phase is gated.
        """
        for name in definition.gates_after(phase):
            gate_state = state.approval_gates.get(name)
            if gate_state is None or not gate_state.resolved:
                return name

        if state.in_safe_mode and definition.phase_index(phase) < len(definition.phases) - 1:
            return SAFE_MODE_GATE
        return None

    def request(self, state: WorkflowState, gate: str, now: Optional[datetime] = None) -> None:
        """Park the instance on `gate`."""
        now = now or self.clock()
        if gate == SAFE_MODE_GATE:
            # The synthetic gate is re-armed for every transition
            state.approval_gates[gate] = ApprovalGateState(timeout_minutes=self.default_timeout_minutes)
        gate_state = state.approval_gates.setdefault(
            gate, ApprovalGateState(timeout_minutes=self.default_timeout_minutes)
        )
        gate_state.approval_requested_at = now
        state.awaiting_approval = gate
        state.can_resume = False
        logger.info(f"Workflow {state.workflow_id} awaiting approval at gate '{gate}'")

    def target_phase_index(self, state: WorkflowState, definition: WorkflowDef, gate: str) -> int:
        """Index of the phase that resolving `gate` moves the instance to."""
        gate_def = definition.approval_gates.get(gate)
        if gate_def is not None:
            return definition.require_phase(gate_def.before)
        return min(state.current_phase_index + 1, len(definition.phases) - 1)

    def _check_pending(self, state: WorkflowState, gate: str) -> None:
        if state.awaiting_approval != gate:
            pending = state.awaiting_approval
            raise ApprovalGateError(
                f"No approval pending for gate: {gate}"
                + (f" (awaiting '{pending}')" if pending else ""),
                gate=gate,
                awaiting=pending,
                workflow_id=state.workflow_id,
            )

    def _resolve(
        self,
        state: WorkflowState,
        definition: WorkflowDef,
        gate: str,
        decision: GateDecisionType,
        now: datetime,
        reason: Optional[str] = None,
        modifications: Optional[dict[str, Any]] = None,
    ) -> str:
        target = self.target_phase_index(state, definition, gate)
        state.gate_history.append(GateDecision(
            gate=gate,
            decision=decision,
            phase_after=state.current_phase,
            phase_before=definition.phases[target],
            decided_at=now,
            reason=reason,
            modifications=modifications or {},
        ))
        state.awaiting_approval = None
        state.can_resume = True
        if target != state.current_phase_index:
            state.enter_phase(definition, target, now)
        return state.current_phase

    def approve(
        self,
        state: WorkflowState,
        definition: WorkflowDef,
        gate: str,
        modifications: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Approve the pending gate and advance to its `before` phase.

        Returns:
            The phase the instance is now on

        Raises:
            ApprovalGateError: If `gate` is not the gate being awaited
        """
        self._check_pending(state, gate)
        now = self.clock()
        gate_state = state.approval_gates.setdefault(
            gate, ApprovalGateState(timeout_minutes=self.default_timeout_minutes)
        )
        gate_state.approved = True
        gate_state.approved_at = now
        gate_state.modifications = dict(modifications or {})

        next_phase = self._resolve(
            state, definition, gate, GateDecisionType.APPROVED, now, modifications=modifications
        )
        logger.info(f"Gate '{gate}' approved. Proceeding to phase: {next_phase}")
        return next_phase

    def skip(
        self,
        state: WorkflowState,
        definition: WorkflowDef,
        gate: str,
        reason: Optional[str] = None,
    ) -> str:
        """
        Bypass the pending gate. Advances like approve() but the gate is
        recorded as skipped, not approved.

        Raises:
            ApprovalGateError: If `gate` is not the gate being awaited
        """
        self._check_pending(state, gate)
        now = self.clock()
        gate_state = state.approval_gates.setdefault(
            gate, ApprovalGateState(timeout_minutes=self.default_timeout_minutes)
        )
        gate_state.skipped = True
        gate_state.skipped_at = now
        gate_state.skip_reason = reason

        next_phase = self._resolve(state, definition, gate, GateDecisionType.SKIPPED, now, reason=reason)
        suffix = f" ({reason})" if reason else ""
        logger.warning(f"Gate '{gate}' skipped{suffix}. Proceeding to phase: {next_phase}")
        return next_phase

    def check_timeout(self, state: WorkflowState, now: Optional[datetime] = None) -> Optional[GateTimeoutStatus]:
        """
        Compare time waited on the pending gate against its timeout.

        Returns:
            GateTimeoutStatus, or None when no gate is pending or the request
            time is unknown
        """
        gate = state.awaiting_approval
        if not gate:
            return None
        gate_state = state.approval_gates.get(gate)
        if gate_state is None or gate_state.approval_requested_at is None:
            return None

        now = now or self.clock()
        elapsed = (now - gate_state.approval_requested_at).total_seconds() / 60
        timeout = gate_state.timeout_minutes

        if elapsed >= timeout:
            return GateTimeoutStatus(
                gate=gate,
                timed_out=True,
                elapsed_minutes=math.floor(elapsed),
                timeout_minutes=timeout,
                remaining_minutes=0,
                message=(
                    f"Approval gate \"{gate}\" has timed out after {math.floor(elapsed)} minutes "
                    f"(timeout: {timeout} minutes)"
                ),
            )

        remaining = math.ceil(timeout - elapsed)
        return GateTimeoutStatus(
            gate=gate,
            timed_out=False,
            elapsed_minutes=math.floor(elapsed),
            timeout_minutes=timeout,
            remaining_minutes=remaining,
            message=f"Approval gate \"{gate}\" - {remaining} minutes remaining before timeout",
        )

    @staticmethod
    def counts(state: WorkflowState) -> tuple[int, int]:
        """(gates approved, gates skipped) over the gate history."""
        approved = sum(1 for d in state.gate_history if d.decision == GateDecisionType.APPROVED)
        skipped = sum(1 for d in state.gate_history if d.decision == GateDecisionType.SKIPPED)
        return approved, skipped
