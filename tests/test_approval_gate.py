"""
Tests for approval gate transitions.

Tests cover:
- Which gate applies when leaving a phase
- Approve and skip resolve the pending gate and advance
- Mismatched gate names are rejected
- Timeout polling (floor elapsed, ceil remaining)
"""

import pytest

from phaseflow.approval_gate import SAFE_MODE_GATE, ApprovalGateManager
from phaseflow.errors import ApprovalGateError
from phaseflow.schema import GateDecisionType, SafeModeState, WorkflowState, new_phase_details


@pytest.fixture
def gates(clock):
    return ApprovalGateManager(clock=clock)


@pytest.fixture
def definition(registry):
    return registry.get("new-project")


def state_at(definition, gates, phase, clock):
    index = definition.phases.index(phase)
    return WorkflowState(
        workflow_id="workflow-test",
        workflow_type=definition.name,
        current_phase_index=index,
        current_phase=phase,
        phase_details=new_phase_details(definition, phase, clock()),
        phases_completed=list(definition.phases[:index + 1]),
        approval_gates=gates.initial_gates(definition),
    )


class TestGateForPhase:
    """ApprovalGateManager.gate_for_phase()"""

    def test_gate_after_phase(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        assert gates.gate_for_phase(state, definition, "research") == "post-research"

    def test_no_gate(self, gates, definition, clock):
        state = state_at(definition, gates, "discovery", clock)
        assert gates.gate_for_phase(state, definition, "discovery") is None

    def test_resolved_gate_not_requested_again(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        state.approval_gates["post-research"].approved = True
        assert gates.gate_for_phase(state, definition, "research") is None

    def test_safe_mode_gates_every_transition(self, gates, definition, clock):
        state = state_at(definition, gates, "discovery", clock)
        state.safe_mode = SafeModeState()
        assert gates.gate_for_phase(state, definition, "discovery") == SAFE_MODE_GATE

    def test_safe_mode_does_not_gate_last_phase(self, gates, definition, clock):
        state = state_at(definition, gates, "sprint", clock)
        state.safe_mode = SafeModeState()
        assert gates.gate_for_phase(state, definition, "sprint") is None


class TestResolve:
    """approve() and skip()"""

    def test_request_parks_instance(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")

        assert state.awaiting_approval == "post-research"
        assert state.can_resume is False
        assert state.approval_gates["post-research"].approval_requested_at == clock()

    def test_approve_advances_to_before_phase(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(minutes=5)

        next_phase = gates.approve(state, definition, "post-research", {"scope": "mvp"})

        assert next_phase == "analysis"
        assert state.current_phase_index == 2
        assert state.awaiting_approval is None
        assert state.can_resume is True
        gate_state = state.approval_gates["post-research"]
        assert gate_state.approved
        assert gate_state.modifications == {"scope": "mvp"}
        assert state.gate_history[-1].decision == GateDecisionType.APPROVED
        assert state.phase_details.progress_percentage == 0

    def test_skip_is_not_an_approval(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        gates.skip(state, definition, "post-research", reason="stakeholder away")

        gate_state = state.approval_gates["post-research"]
        assert gate_state.skipped
        assert not gate_state.approved
        assert gate_state.skip_reason == "stakeholder away"
        assert state.current_phase == "analysis"
        assert gates.counts(state) == (0, 1)

    def test_wrong_gate_rejected(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")

        with pytest.raises(ApprovalGateError) as exc_info:
            gates.approve(state, definition, "pre-implementation")
        assert "No approval pending for gate: pre-implementation" in exc_info.value.message
        assert state.awaiting_approval == "post-research"

    def test_approve_without_pending_gate(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        with pytest.raises(ApprovalGateError):
            gates.approve(state, definition, "post-research")

    def test_safe_mode_gate_advances_one_phase(self, gates, definition, clock):
        state = state_at(definition, gates, "discovery", clock)
        gates.request(state, SAFE_MODE_GATE)
        assert gates.approve(state, definition, SAFE_MODE_GATE) == "research"


class TestTimeout:
    """check_timeout()"""

    def test_no_pending_gate(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        assert gates.check_timeout(state) is None

    def test_before_timeout(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(minutes=29)

        status = gates.check_timeout(state)
        assert status.timed_out is False
        assert status.remaining_minutes == 1
        assert status.message == 'Approval gate "post-research" - 1 minutes remaining before timeout'

    def test_after_timeout(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(minutes=31)

        status = gates.check_timeout(state)
        assert status.timed_out is True
        assert status.elapsed_minutes == 31
        assert status.remaining_minutes == 0
        assert "has timed out after 31 minutes (timeout: 30 minutes)" in status.message

    def test_exactly_at_timeout(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(minutes=30)
        assert gates.check_timeout(state).timed_out is True

    def test_partial_minutes(self, gates, definition, clock):
        """Elapsed is floored and remaining is rounded up."""
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(minutes=10, seconds=30)

        status = gates.check_timeout(state)
        assert status.elapsed_minutes == 10
        assert status.remaining_minutes == 20

    def test_timeout_never_resolves_gate(self, gates, definition, clock):
        state = state_at(definition, gates, "research", clock)
        gates.request(state, "post-research")
        clock.advance(hours=5)
        gates.check_timeout(state)
        assert state.awaiting_approval == "post-research"
