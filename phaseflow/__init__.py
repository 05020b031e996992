"""
Phaseflow - Multi-phase workflow orchestration

Drives a long-running workflow through an ordered list of phases with
human approval gates, automatic checkpoints and typed error recovery.
"""

__version__ = "1.0.0"

from .schema import (
    WorkflowDef,
    GateDef,
    WorkflowState,
    PhaseDetails,
    CheckpointData,
    CheckpointTrigger,
    PhaseRunStatus,
    ErrorRecord,
)

from .errors import (
    ErrorKind,
    RecoveryStrategy,
    RetryPolicy,
    WorkflowError,
    StateCorruptionError,
    FileAccessError,
    CheckpointNotFoundError,
    InvalidPhaseError,
    InvalidWorkflowTypeError,
    WorkflowDefinitionError,
    ApprovalGateError,
    WorkerFailure,
    NetworkError,
    WorkflowValidationError,
    RecoveryFailedError,
    NoActiveWorkflowError,
    WorkflowAlreadyActiveError,
)

from .registry import WorkflowRegistry
from .config import ConfigManager, PhaseflowConfig
from .state_store import StateStore, FileStateStore, InMemoryStateStore
from .checkpoint import CheckpointManager
from .approval_gate import ApprovalGateManager, GateTimeoutStatus
from .recovery import ErrorRecoveryEngine, RecoveryContext, RecoveryResult
from .engine import WorkflowOrchestrator
from .executor import ExecutionWrapper, PhaseRunResult
from .health import WorkflowDiagnostics, DiagnosticsReport

__all__ = [
    "__version__",
    # Schema
    "WorkflowDef",
    "GateDef",
    "WorkflowState",
    "PhaseDetails",
    "CheckpointData",
    "CheckpointTrigger",
    "PhaseRunStatus",
    "ErrorRecord",
    # Errors
    "ErrorKind",
    "RecoveryStrategy",
    "RetryPolicy",
    "WorkflowError",
    "StateCorruptionError",
    "FileAccessError",
    "CheckpointNotFoundError",
    "InvalidPhaseError",
    "InvalidWorkflowTypeError",
    "WorkflowDefinitionError",
    "ApprovalGateError",
    "WorkerFailure",
    "NetworkError",
    "WorkflowValidationError",
    "RecoveryFailedError",
    "NoActiveWorkflowError",
    "WorkflowAlreadyActiveError",
    # Components
    "WorkflowRegistry",
    "ConfigManager",
    "PhaseflowConfig",
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "CheckpointManager",
    "ApprovalGateManager",
    "GateTimeoutStatus",
    "ErrorRecoveryEngine",
    "RecoveryContext",
    "RecoveryResult",
    "WorkflowOrchestrator",
    "ExecutionWrapper",
    "PhaseRunResult",
    "WorkflowDiagnostics",
    "DiagnosticsReport",
]
