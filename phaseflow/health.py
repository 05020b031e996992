"""
Workflow diagnostics.

Read-only inspection of the state directory behind `workflow-recovery
--diagnostic`:
- State file integrity and invariant validation
- Lock state (stale holder detection with psutil)
- Recent checkpoints and error records
- Pending gate timeout and gates about to time out
- Stalled phases and unresponsive workers
- Recommendations for the operator
"""

import json
import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, List, Literal, Optional

from .engine import WorkflowOrchestrator
from .errors import WorkflowError
from .locking import lock_status
from .schema import WorkflowState

logger = logging.getLogger(__name__)

StatusType = Literal["ok", "warning", "error"]

RECENT_LIMIT = 5

# Stuck-state thresholds, in minutes
PHASE_STALL_MINUTES = 15
PROGRESS_STALL_MINUTES = 10
WORKER_TIMEOUT_MINUTES = 5
GATE_WARNING_MINUTES = 5

# A phase at or above this percentage is finishing, not stalled
STALL_PROGRESS_CEILING = 90


def _minutes_since(then: datetime, now: datetime) -> int:
    return math.floor((now - then).total_seconds() / 60)


@dataclass
class ComponentHealth:
    """Health status of a single component."""
    name: str
    status: StatusType
    message: str = ""
    details: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {k: v for k, v in asdict(self).items() if v is not None and v != ""}


@dataclass
class DiagnosticsReport:
    """Full diagnostics report for the state directory."""
    overall_status: StatusType
    timestamp: str
    workflow: dict = field(default_factory=dict)
    components: List[ComponentHealth] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    checkpoints: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    gate_timeout: Optional[dict] = None
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'overall_status': self.overall_status,
            'timestamp': self.timestamp,
            'workflow': self.workflow,
            'components': [c.to_dict() for c in self.components],
            'validation_errors': self.validation_errors,
            'checkpoints': self.checkpoints,
            'errors': self.errors,
            'gate_timeout': self.gate_timeout,
            'recommendations': self.recommendations,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


class WorkflowDiagnostics:
    """
    Diagnostics for one orchestrator's state.

    Never triggers recovery: a state file that fails its integrity check is
    reported, not repaired.
    """

    def __init__(self, orchestrator: WorkflowOrchestrator, clock: Optional[Callable[[], datetime]] = None):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.clock = clock or orchestrator.clock

    def check_state(self) -> tuple[ComponentHealth, Optional[WorkflowState]]:
        """
        Check state integrity and load the instance if it is intact.

        Returns:
            (ComponentHealth, WorkflowState or None)
        """
        ok, problems = self.store.verify_integrity()
        if not ok:
            return ComponentHealth(
                name="state_file",
                status="error",
                message="State integrity check failed",
                details={"problems": problems},
            ), None

        try:
            state = self.store.load()
        except WorkflowError as e:
            return ComponentHealth(
                name="state_file",
                status="error",
                message=f"Error reading state: {e.message}",
            ), None

        if state is None:
            return ComponentHealth(
                name="state_file",
                status="ok",
                message="No active workflow (state file does not exist)",
            ), None

        return ComponentHealth(name="state_file", status="ok", message="State file is valid"), state

    def check_validation(self, state: Optional[WorkflowState]) -> tuple[ComponentHealth, list[str]]:
        if state is None:
            return ComponentHealth(name="validation", status="ok", message="Nothing to validate"), []
        problems = self.orchestrator.recovery.validate(state)
        if problems:
            return ComponentHealth(
                name="validation",
                status="error",
                message=f"FAILED ({len(problems)} error(s))",
            ), problems
        return ComponentHealth(name="validation", status="ok", message="PASSED"), []

    def check_locks(self) -> ComponentHealth:
        """Check the state lock for a stale holder."""
        paths = self.orchestrator.paths
        if paths is None:
            return ComponentHealth(name="locks", status="ok", message="Store is not file-backed")

        status = lock_status(paths.state_lock())
        if not status["exists"]:
            return ComponentHealth(name="locks", status="ok", message="No locks present")
        if status["stale"] and not status["held"]:
            return ComponentHealth(
                name="locks",
                status="warning",
                message=f"Stale lock left by process {status['pid']}",
                details=status,
            )
        if status["held"]:
            return ComponentHealth(
                name="locks",
                status="ok",
                message=f"State lock held by process {status['pid']}",
                details=status,
            )
        return ComponentHealth(name="locks", status="ok", message="No stale locks")

    def check_stuck(self, state: WorkflowState, now: datetime) -> list[ComponentHealth]:
        """
        Look for a workflow that has stopped moving.

        A phase parked on an approval gate is waiting, not stalled, so the
        phase and progress checks only run while the phase is executing.
        """
        details = state.phase_details
        phase = state.current_phase
        running = not state.awaiting_approval and not state.completed

        phase_minutes = _minutes_since(details.started_at, now)
        if running and phase_minutes > PHASE_STALL_MINUTES and details.progress_percentage < STALL_PROGRESS_CEILING:
            phase_health = ComponentHealth(
                name="phase_progress",
                status="warning",
                message=(
                    f"Phase \"{phase}\" stalled at {details.progress_percentage}% "
                    f"for {phase_minutes} minutes"
                ),
                details={"phase": phase, "minutes": phase_minutes},
            )
        else:
            phase_health = ComponentHealth(name="phase_progress", status="ok", message="Phase is progressing")

        quiet_minutes = _minutes_since(details.progress_changed_at or details.started_at, now)
        if running and quiet_minutes > PROGRESS_STALL_MINUTES and details.progress_percentage < 100:
            progress_health = ComponentHealth(
                name="progress_activity",
                status="warning",
                message=f"No progress change for {quiet_minutes} minutes",
                details={"minutes": quiet_minutes},
            )
        else:
            progress_health = ComponentHealth(name="progress_activity", status="ok", message="Progress is moving")

        unresponsive = [
            {
                "name": w.name,
                "last_update": w.last_update.isoformat(),
                "minutes": _minutes_since(w.last_update, now),
            }
            for w in details.active_workers
            if w.last_update is not None and _minutes_since(w.last_update, now) > WORKER_TIMEOUT_MINUTES
        ]
        if unresponsive:
            worker_health = ComponentHealth(
                name="workers",
                status="warning",
                message=(
                    f"{len(unresponsive)} worker(s) unresponsive: "
                    + ", ".join(w["name"] for w in unresponsive)
                ),
                details={"unresponsive": unresponsive},
            )
        else:
            worker_health = ComponentHealth(
                name="workers",
                status="ok",
                message=f"{len(details.active_workers)} worker(s) reporting",
            )

        return [phase_health, progress_health, worker_health]

    def recent_checkpoints(self, workflow_id: Optional[str]) -> list[dict]:
        checkpoints = self.orchestrator.checkpoints.list(workflow_id)[:RECENT_LIMIT]
        return [
            {
                "checkpoint_id": c.checkpoint_id,
                "trigger": c.trigger.value,
                "phase": c.phase,
                "progress": c.progress_at_creation,
                "created_at": c.created_at.isoformat(),
                "note": c.note,
            }
            for c in checkpoints
        ]

    def recent_errors(self, limit: int = RECENT_LIMIT) -> list[dict]:
        return [
            {
                "incident_id": r.incident_id,
                "kind": r.kind,
                "message": r.message,
                "phase": r.context.current_phase,
                "timestamp": r.context.timestamp.isoformat(),
                "strategy": r.recovery.strategy,
                "recovered": r.recovery.succeeded,
            }
            for r in self.store.list_error_records(limit)
        ]

    def run(self) -> DiagnosticsReport:
        """
        Run full diagnostics.

        Returns:
            DiagnosticsReport
        """
        state_health, state = self.check_state()
        validation_health, problems = self.check_validation(state)
        components = [state_health, validation_health, self.check_locks()]

        gate_timeout = None
        if state is not None:
            workflow = {
                "workflow_id": state.workflow_id,
                "workflow_type": state.workflow_type,
                "current_phase": state.current_phase,
                "phase_index": state.current_phase_index,
                "phase_progress": state.phase_details.progress_percentage,
                "phases_completed": list(state.phases_completed),
                "awaiting_approval": state.awaiting_approval,
                "can_resume": state.can_resume,
                "safe_mode": state.in_safe_mode,
            }
            now = self.clock()
            components.extend(self.check_stuck(state, now))
            timeout = self.orchestrator.gates.check_timeout(state, now)
            if timeout is not None:
                gate_timeout = timeout.to_dict()
                closing = timeout.timed_out or timeout.remaining_minutes <= GATE_WARNING_MINUTES
                components.append(ComponentHealth(
                    name="approval_gate",
                    status="warning" if closing else "ok",
                    message=timeout.message,
                ))
        else:
            workflow = {"status": "No active workflow"}

        checkpoints = self.recent_checkpoints(state.workflow_id if state else None)
        errors = self.recent_errors()

        recommendations = []
        if state_health.status == "error" or problems:
            recommendations.append(
                "State validation errors detected. Consider --restore-checkpoint or --reset-workflow"
            )
        if state is not None and state.in_safe_mode:
            recommendations.append("Workflow is in safe mode. Run --exit-safe-mode when issues are resolved")
        if state is not None and state.awaiting_approval:
            if gate_timeout and gate_timeout["timed_out"]:
                recommendations.append(
                    f"Approval gate {state.awaiting_approval} has timed out. "
                    f"Approve it or use --skip-approval to bypass"
                )
            elif gate_timeout and gate_timeout["remaining_minutes"] <= GATE_WARNING_MINUTES:
                recommendations.append(
                    f"Approval gate {state.awaiting_approval} times out in "
                    f"{gate_timeout['remaining_minutes']} minutes. Approve it or use --skip-approval to bypass"
                )
            else:
                recommendations.append(
                    f"Workflow awaiting approval at {state.awaiting_approval}. Use --skip-approval to bypass"
                )
        stuck = {c.name for c in components if c.status == "warning"}
        if "phase_progress" in stuck or "progress_activity" in stuck:
            recommendations.append(
                f"Phase {state.current_phase} appears stuck. Report progress, "
                f"or use --reset-phase to restart it or --restore-checkpoint to roll back"
            )
        if "workers" in stuck:
            names = [w["name"] for c in components if c.name == "workers" for w in c.details["unresponsive"]]
            recommendations.append(
                f"Unresponsive workers: {', '.join(names)}. Use --retry-agent or --skip-agent"
            )
        if any(c.name == "locks" and c.status == "warning" for c in components):
            recommendations.append("A stale state lock was found. It is released automatically on next write")
        if errors:
            recommendations.append("Recent errors detected. Review with --show-errors for details")

        statuses = [c.status for c in components]
        if "error" in statuses:
            overall = "error"
        elif "warning" in statuses:
            overall = "warning"
        else:
            overall = "ok"

        report = DiagnosticsReport(
            overall_status=overall,
            timestamp=self.clock().isoformat(),
            workflow=workflow,
            components=components,
            validation_errors=problems,
            checkpoints=checkpoints,
            errors=errors,
            gate_timeout=gate_timeout,
            recommendations=recommendations,
        )
        logger.debug(f"Diagnostics finished: {overall}")
        return report
