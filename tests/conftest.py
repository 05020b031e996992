"""Shared fixtures: a controllable clock and fully wired orchestrators."""

from datetime import datetime, timedelta, timezone

import pytest

from phaseflow.approval_gate import ApprovalGateManager
from phaseflow.checkpoint import CheckpointManager
from phaseflow.config import ConfigManager
from phaseflow.engine import WorkflowOrchestrator
from phaseflow.errors import RetryPolicy
from phaseflow.recovery import ErrorRecoveryEngine
from phaseflow.registry import WorkflowRegistry
from phaseflow.state_store import InMemoryStateStore


class FakeClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry():
    return WorkflowRegistry.default()


def _build_orchestrator(store, registry, clock, retry_policy=None):
    checkpoints = CheckpointManager(store, clock=clock)
    gates = ApprovalGateManager(clock=clock)
    recovery = ErrorRecoveryEngine(
        store, registry, checkpoints, gates,
        retry_policy=retry_policy or RetryPolicy(),
        clock=clock,
    )
    return WorkflowOrchestrator(store, registry, checkpoints, gates, recovery, clock=clock)


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def orchestrator(store, registry, clock):
    """Orchestrator over an in-memory store."""
    return _build_orchestrator(store, registry, clock)


@pytest.fixture
def file_orchestrator(tmp_path, clock):
    """Orchestrator over a FileStateStore in tmp_path, with no config file."""
    config_manager = ConfigManager(tmp_path / "phaseflow.yaml", environ={})
    return WorkflowOrchestrator.for_directory(tmp_path, config_manager, clock=clock)


def _advance_to_gate(orchestrator, gate):
    """Complete phases until the workflow parks on `gate`."""
    for _ in range(20):
        state = orchestrator.complete_phase()
        if state.awaiting_approval == gate:
            return state
    raise AssertionError(f"Workflow never reached gate {gate}")


@pytest.fixture
def advance_to_gate():
    return _advance_to_gate


@pytest.fixture
def make_orchestrator(registry, clock):
    """Factory for orchestrators over a given store and retry policy."""
    def make(store, retry_policy=None):
        return _build_orchestrator(store, registry, clock, retry_policy)
    return make
