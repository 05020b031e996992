"""
Workflow Schema Definitions using Pydantic

This module defines the structure of workflow definitions (loaded from YAML)
and the runtime state of a workflow instance, including checkpoints.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Optional
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidPhaseError


class CheckpointTrigger(str, Enum):
    """What caused a checkpoint to be written."""
    PHASE_COMPLETION = "phase-completion"
    PROGRESS_MILESTONE = "progress-milestone"
    TIME_INTERVAL = "time-interval"
    MANUAL = "manual"


class PhaseRunStatus(str, Enum):
    """Execution status of the current phase."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class GateDecisionType(str, Enum):
    """How a gate was resolved."""
    APPROVED = "approved"
    SKIPPED = "skipped"


# ============================================================================
# YAML Schema (Workflow Definition)
# ============================================================================

class GateDef(BaseModel):
    """An approval gate between two phases."""
    model_config = ConfigDict(frozen=True)

    after: str
    before: str
    timeout_minutes: int = 30

    @field_validator('timeout_minutes')
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("timeout_minutes must be positive")
        return v


class WorkflowDef(BaseModel):
    """Complete workflow definition loaded from YAML."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    phases: tuple[str, ...]
    display_names: dict[str, str] = Field(default_factory=dict)
    approval_gates: dict[str, GateDef] = Field(default_factory=dict)
    phase_durations: dict[str, str] = Field(default_factory=dict)

    def phase_index(self, phase_id: str) -> int:
        """Get the index of a phase, -1 if it is not part of this workflow."""
        try:
            return self.phases.index(phase_id)
        except ValueError:
            return -1

    def require_phase(self, phase_id: str) -> int:
        """Get the index of a phase, raising InvalidPhaseError if unknown."""
        idx = self.phase_index(phase_id)
        if idx < 0:
            raise InvalidPhaseError(
                f"Unknown phase '{phase_id}' for workflow type '{self.name}'",
                phase=phase_id,
                workflow_type=self.name,
                valid_phases=list(self.phases),
            )
        return idx

    def gates_after(self, phase_id: str) -> list[str]:
        """Gate names whose `after` phase is phase_id, in definition order."""
        return [name for name, gate in self.approval_gates.items() if gate.after == phase_id]

    def display_name(self, phase_id: str) -> str:
        return self.display_names.get(phase_id, phase_id)


# ============================================================================
# Runtime State Schema
# ============================================================================

def _utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class WorkerStatus(BaseModel):
    """Reported status of one worker inside the current phase."""
    name: str
    status: str = "active"
    last_update: Optional[datetime] = None


class PhaseDetails(BaseModel):
    """Progress of the current phase."""
    name: str
    progress_percentage: int = 0
    active_workers: list[WorkerStatus] = Field(default_factory=list)
    artifacts_created: int = 0
    artifacts_total: int = 0
    estimated_time_remaining: Optional[str] = None
    started_at: datetime = Field(default_factory=_utc_now)
    progress_changed_at: Optional[datetime] = None
    status: PhaseRunStatus = PhaseRunStatus.PENDING
    attempts: int = 0


class ApprovalGateState(BaseModel):
    """Runtime state of an approval gate."""
    approved: bool = False
    approved_at: Optional[datetime] = None
    approval_requested_at: Optional[datetime] = None
    timeout_minutes: int = 30
    skipped: bool = False
    skipped_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    modifications: dict[str, Any] = Field(default_factory=dict)

    @property
    def resolved(self) -> bool:
        return self.approved or self.skipped


class GateDecision(BaseModel):
    """Audit record of an approve/skip decision."""
    gate: str
    decision: GateDecisionType
    phase_after: str
    phase_before: str
    decided_at: datetime = Field(default_factory=_utc_now)
    reason: Optional[str] = None
    modifications: dict[str, Any] = Field(default_factory=dict)


class CheckpointMeta(BaseModel):
    """Bookkeeping used by the auto-checkpoint triggers."""
    last_save_time: Optional[datetime] = None
    last_checkpoint_time: Optional[datetime] = None
    last_progress_at_checkpoint: int = 0
    total_checkpoints: int = 0
    last_partial_save: Optional[datetime] = None
    phase_checkpoints: dict[str, datetime] = Field(default_factory=dict)


SAFE_MODE_RESTRICTIONS = [
    "No parallel worker execution",
    "Manual approval required for phase transitions",
    "Limited to essential operations only",
]


class SafeModeState(BaseModel):
    """Restricted operating mode entered during error recovery."""
    enabled: bool = True
    reason: str = "Error recovery"
    entered_at: datetime = Field(default_factory=_utc_now)
    restrictions: list[str] = Field(default_factory=lambda: list(SAFE_MODE_RESTRICTIONS))
    # parallel_mode before safe mode was entered, restored on exit
    original_parallel_mode: bool = False


class SkippedWorker(BaseModel):
    """A worker removed from a phase by recovery."""
    name: str
    phase: str
    reason: str
    timestamp: datetime = Field(default_factory=_utc_now)


class WorkflowState(BaseModel):
    """Complete runtime state of a workflow instance."""
    workflow_id: str
    workflow_type: str
    started_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    current_phase_index: int = 0
    current_phase: str
    phase_details: PhaseDetails
    phases_completed: list[str] = Field(default_factory=list)
    approval_gates: dict[str, ApprovalGateState] = Field(default_factory=dict)
    checkpoint_meta: CheckpointMeta = Field(default_factory=CheckpointMeta)
    can_resume: bool = True
    awaiting_approval: Optional[str] = None
    safe_mode: Optional[SafeModeState] = None
    skipped_workers: list[SkippedWorker] = Field(default_factory=list)
    parallel_mode: bool = False
    dry_run: bool = False
    completed: bool = False
    completed_at: Optional[datetime] = None
    gate_history: list[GateDecision] = Field(default_factory=list)

    @field_validator('phases_completed')
    @classmethod
    def phases_completed_unique(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("phases_completed contains duplicate phases")
        return v

    @property
    def in_safe_mode(self) -> bool:
        return self.safe_mode is not None and self.safe_mode.enabled

    def enter_phase(self, definition: WorkflowDef, index: int, now: Optional[datetime] = None) -> None:
        """Point the instance at phase `index` with fresh phase details."""
        phase_id = definition.phases[index]
        self.current_phase_index = index
        self.current_phase = phase_id
        self.phase_details = new_phase_details(definition, phase_id, now)
        # Progress milestones are measured within a phase
        self.checkpoint_meta.last_progress_at_checkpoint = 0

    def touch(self, now: Optional[datetime] = None) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = now or _utc_now()


def new_phase_details(definition: WorkflowDef, phase_id: str, now: Optional[datetime] = None) -> PhaseDetails:
    return PhaseDetails(
        name=definition.display_name(phase_id),
        estimated_time_remaining=definition.phase_durations.get(phase_id),
        started_at=now or _utc_now(),
    )


# ============================================================================
# Checkpoint Schema
# ============================================================================

class CheckpointData(BaseModel):
    """A persisted snapshot of a workflow instance."""
    checkpoint_id: str
    trigger: CheckpointTrigger
    sequence: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    workflow_id: str
    phase: str
    progress_at_creation: int = 0
    note: Optional[str] = None
    # Worker results handed to complete_phase, kept with the phase-completion snapshot
    results: dict[str, Any] = Field(default_factory=dict)
    state_snapshot: WorkflowState

    @property
    def automatic(self) -> bool:
        return self.trigger != CheckpointTrigger.MANUAL

    @model_validator(mode='after')
    def snapshot_matches_workflow(self):
        if self.state_snapshot.workflow_id != self.workflow_id:
            raise ValueError("state_snapshot belongs to a different workflow")
        return self


# ============================================================================
# Error Log Schema
# ============================================================================

class ErrorContext(BaseModel):
    """Where the workflow was when an error happened."""
    workflow_id: Optional[str] = None
    workflow_type: Optional[str] = None
    current_phase: Optional[str] = None
    phase_index: Optional[int] = None
    operation: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)


class RecoveryOutcome(BaseModel):
    """What recovery did about an error."""
    strategy: str
    attempted: bool = False
    succeeded: bool = False
    message: Optional[str] = None
    error: Optional[str] = None
    resulting_phase: Optional[str] = None
    resulting_state: dict[str, Any] = Field(default_factory=dict)


class ErrorRecord(BaseModel):
    """One durable error-log entry, rewritten in place with the outcome."""
    incident_id: str
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    stack: Optional[str] = None
    context: ErrorContext = Field(default_factory=ErrorContext)
    recovery: RecoveryOutcome
