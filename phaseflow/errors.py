"""
Error Taxonomy

Typed failures raised by the orchestrator, the recovery strategies they map
to, and the retry policy used by the execution wrapper.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .recovery import RecoveryResult


class ErrorKind(str, Enum):
    """Closed set of failure kinds the recovery engine understands."""
    STATE_CORRUPTION = "STATE_CORRUPTION"
    FILE_ACCESS = "FILE_ACCESS"
    INVALID_PHASE = "INVALID_PHASE"
    INVALID_WORKFLOW_TYPE = "INVALID_WORKFLOW_TYPE"
    APPROVAL_GATE = "APPROVAL_GATE"
    WORKER_FAILURE = "WORKER_FAILURE"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RECOVERY_FAILED = "RECOVERY_FAILED"
    UNKNOWN = "UNKNOWN"


class RecoveryStrategy(str, Enum):
    """What the recovery engine does about a failure."""
    RESTORE_CHECKPOINT = "restore_checkpoint"
    RESET_PHASE = "reset_phase"
    SKIP_WORKER = "skip_worker"
    RETRY_OPERATION = "retry_operation"
    MANUAL_INTERVENTION = "manual_intervention"
    SAFE_MODE = "safe_mode"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class WorkflowError(Exception):
    """Base exception for workflow errors"""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details
        self.timestamp = datetime.now(timezone.utc)
        # Set by the recovery engine once the error has been handled
        self.recovery: Optional["RecoveryResult"] = None

    @property
    def instructions(self) -> list[str]:
        if self.recovery is None:
            return []
        return list(self.recovery.instructions)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
            "timestamp": self.timestamp.isoformat(),
        }


class StateCorruptionError(WorkflowError):
    """Persisted state failed an integrity or invariant check"""
    kind = ErrorKind.STATE_CORRUPTION


class FileAccessError(WorkflowError):
    """State files could not be read or written"""
    kind = ErrorKind.FILE_ACCESS

    def __init__(self, message: str, retryable: bool = False, **details: Any):
        super().__init__(message, retryable=retryable, **details)
        self.retryable = retryable


class CheckpointNotFoundError(FileAccessError):
    """Requested checkpoint does not exist"""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, retryable=False, **details)


class InvalidPhaseError(WorkflowError):
    """Operation refers to a phase that is not the current one or not defined"""
    kind = ErrorKind.INVALID_PHASE


class InvalidWorkflowTypeError(WorkflowError):
    """Workflow type is not registered"""
    kind = ErrorKind.INVALID_WORKFLOW_TYPE


class WorkflowDefinitionError(InvalidWorkflowTypeError):
    """Workflow definition is malformed and was rejected at registration"""


class ApprovalGateError(WorkflowError):
    """Gate operation does not match the gate currently awaited"""
    kind = ErrorKind.APPROVAL_GATE


class WorkerFailure(WorkflowError):
    """A phase worker failed"""
    kind = ErrorKind.WORKER_FAILURE

    def __init__(
        self,
        message: str,
        worker_name: Optional[str] = None,
        critical: bool = False,
        retryable: bool = True,
        **details: Any
    ):
        super().__init__(
            message,
            worker_name=worker_name,
            critical=critical,
            retryable=retryable,
            **details
        )
        self.worker_name = worker_name
        self.critical = critical
        self.retryable = retryable


class NetworkError(WorkflowError):
    """Transient network failure inside a worker"""
    kind = ErrorKind.NETWORK_ERROR


class WorkflowValidationError(WorkflowError):
    """Input or result failed validation"""
    kind = ErrorKind.VALIDATION_ERROR


class RecoveryFailedError(WorkflowError):
    """A recovery strategy itself raised"""
    kind = ErrorKind.RECOVERY_FAILED


class NoActiveWorkflowError(WorkflowError):
    """Operation needs a live workflow instance and there is none"""
    kind = ErrorKind.INVALID_WORKFLOW_TYPE

    def __init__(self, message: str = "No active workflow", **details: Any):
        super().__init__(message, **details)


class WorkflowAlreadyActiveError(WorkflowError):
    """start() called while another instance is live"""
    kind = ErrorKind.INVALID_WORKFLOW_TYPE


def _jsonable(value: Any) -> Any:
    """Reduce detail payloads to something json.dump accepts."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, WorkflowError):
        return value.to_dict()
    return str(value)


# ============================================================================
# RETRY POLICY
# ============================================================================

@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_retries: int = 3
    backoff_base: float = 2.0
    max_delay_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        """
        Exponential backoff delay before the next attempt.

        Args:
            attempt: Zero-based number of the attempt that just failed

        Returns:
            Delay in seconds (base ** attempt, capped at max_delay_seconds)
        """
        return min(self.backoff_base ** attempt, self.max_delay_seconds)
