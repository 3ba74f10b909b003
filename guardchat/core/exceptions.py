"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
session engine, its stores and its HTTP surface.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Session errors (2xxx)
    SESSION_NOT_FOUND = "ERR_2001"
    SESSION_INACTIVE = "ERR_2002"

    # Confirmation errors (3xxx)
    CONFIRMATION_ALREADY_PENDING = "ERR_3001"
    NO_PENDING_CONFIRMATION = "ERR_3002"

    # Workflow errors (4xxx)
    WORKFLOW_NOT_FOUND = "ERR_4001"
    NO_ACTIVE_WORKFLOW = "ERR_4002"
    WORKFLOW_ALREADY_ACTIVE = "ERR_4003"
    WORKFLOW_STEP_OUT_OF_RANGE = "ERR_4004"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5001"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5002"
    COMMAND_EXECUTION_FAILED = "ERR_5003"
    COLLABORATOR_NOT_CONFIGURED = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    INVALID_STATE = "ERR_6002"

    # Storage errors (7xxx)
    STORAGE_UNAVAILABLE = "ERR_7001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SessionNotFoundError(NotFoundException):
    """Raised when a session id is unknown to both the manager and the store"""

    def __init__(self, session_id: str):
        super().__init__(
            resource="Session",
            identifier=session_id,
            error_code=ErrorCode.SESSION_NOT_FOUND
        )


class SessionInactiveError(AppException):
    """Raised when input reaches a session that was ended"""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Session has ended: {session_id}",
            error_code=ErrorCode.SESSION_INACTIVE,
            status_code=409,
            details={"session_id": session_id}
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, session_id: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "session_id": session_id
            }
        )


class InvalidStateError(StateMachineException):
    """Raised when an operation is attempted in a state that does not accept it"""

    def __init__(self, operation: str, current_state: str, session_id: str | None = None):
        super().__init__(
            message=f"Cannot {operation} while session is '{current_state}'",
            error_code=ErrorCode.INVALID_STATE,
            details={
                "operation": operation,
                "current_state": current_state,
                "session_id": session_id
            }
        )


class ConfirmationException(AppException):
    """Base exception for confirmation gate errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        session_id: str | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details={"session_id": session_id} if session_id else None
        )


class ConfirmationAlreadyPendingError(ConfirmationException):
    """Raised when a second confirmation is requested while one is open"""

    def __init__(self, session_id: str | None = None):
        super().__init__(
            message="A confirmation is already pending for this session",
            error_code=ErrorCode.CONFIRMATION_ALREADY_PENDING,
            session_id=session_id
        )


class NoPendingConfirmationError(ConfirmationException):
    """Raised when a reply arrives but nothing awaits confirmation"""

    def __init__(self, session_id: str | None = None):
        super().__init__(
            message="No confirmation is pending for this session",
            error_code=ErrorCode.NO_PENDING_CONFIRMATION,
            session_id=session_id
        )


class WorkflowException(AppException):
    """Base exception for workflow orchestration errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 409,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class UnknownWorkflowError(WorkflowException):
    """Raised when a workflow template id is not registered"""

    def __init__(self, template_id: str):
        super().__init__(
            message=f"Workflow template not found: {template_id}",
            error_code=ErrorCode.WORKFLOW_NOT_FOUND,
            status_code=404,
            details={"template_id": template_id}
        )


class NoActiveWorkflowError(WorkflowException):
    """Raised when a step operation is called without an active workflow"""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Session {session_id} has no active workflow",
            error_code=ErrorCode.NO_ACTIVE_WORKFLOW,
            details={"session_id": session_id}
        )


class WorkflowAlreadyActiveError(WorkflowException):
    """Raised when starting a workflow while another one is in progress"""

    def __init__(self, session_id: str, workflow_id: str):
        super().__init__(
            message=f"Session {session_id} already runs workflow '{workflow_id}'",
            error_code=ErrorCode.WORKFLOW_ALREADY_ACTIVE,
            details={"session_id": session_id, "workflow_id": workflow_id}
        )


class WorkflowStepOutOfRangeError(WorkflowException):
    """Raised when advancing or skipping past the final step"""

    def __init__(self, workflow_id: str, current_step: int, total_steps: int):
        super().__init__(
            message=f"Workflow '{workflow_id}' has no step {current_step} (total {total_steps})",
            error_code=ErrorCode.WORKFLOW_STEP_OUT_OF_RANGE,
            details={
                "workflow_id": workflow_id,
                "current_step": current_step,
                "total_steps": total_steps
            }
        )


class ExternalServiceException(AppException):
    """Base exception for collaborator (classifier, executor) errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class ServiceTimeoutError(ExternalServiceException):
    """Raised when a collaborator call times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class CommandExecutionError(ExternalServiceException):
    """Raised when the executor reports a failed command"""

    def __init__(self, command: str, message: str):
        super().__init__(
            service_name="command_executor",
            message=message,
            error_code=ErrorCode.COMMAND_EXECUTION_FAILED,
            details={"command": command}
        )


class CollaboratorNotConfiguredError(ExternalServiceException):
    """Raised when the HTTP surface has no classifier/executor wired in"""

    def __init__(self, setting_name: str):
        super().__init__(
            service_name=setting_name.lower(),
            message=f"{setting_name} is not configured",
            error_code=ErrorCode.COLLABORATOR_NOT_CONFIGURED,
            details={"setting": setting_name}
        )


class StorageUnavailableError(AppException):
    """Raised by context store writes when the backing store is unreachable"""

    def __init__(self, backend: str, operation: str, reason: str | None = None):
        super().__init__(
            message=f"{backend} context store unavailable during {operation}",
            error_code=ErrorCode.STORAGE_UNAVAILABLE,
            status_code=503,
            details={"backend": backend, "operation": operation, "reason": reason}
        )
