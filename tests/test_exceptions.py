"""
Tests for the application exception hierarchy
"""
import pytest

from guardchat.core.exceptions import (
    AppException,
    CircuitBreakerOpenError,
    CollaboratorNotConfiguredError,
    CommandExecutionError,
    ConfirmationAlreadyPendingError,
    ConfirmationException,
    ErrorCode,
    ExternalServiceException,
    InvalidStateError,
    InvalidStateTransitionError,
    NoActiveWorkflowError,
    NoPendingConfirmationError,
    NotFoundException,
    ServiceTimeoutError,
    SessionInactiveError,
    SessionNotFoundError,
    StateMachineException,
    StorageUnavailableError,
    UnknownWorkflowError,
    ValidationException,
    WorkflowAlreadyActiveError,
    WorkflowException,
    WorkflowStepOutOfRangeError,
)


class TestAppException:

    @pytest.mark.unit
    def test_defaults(self):
        exc = AppException("boom")
        assert exc.status_code == 500
        assert exc.error_code == ErrorCode.INTERNAL_ERROR
        assert str(exc) == "boom"

    @pytest.mark.unit
    def test_to_dict(self):
        exc = ValidationException("Input must not be empty", field="text")
        assert exc.to_dict() == {
            "error": {
                "code": "ERR_1001",
                "message": "Input must not be empty",
                "details": {"field": "text"},
            }
        }

    @pytest.mark.unit
    def test_details_not_shared_between_instances(self):
        first = AppException("a")
        first.details["x"] = 1
        assert AppException("b").details == {}


class TestTaxonomy:
    """כל שגיאה במקום הנכון בהיררכיה ועם קוד HTTP מתאים"""

    @pytest.mark.unit
    @pytest.mark.parametrize("exc, base, status, code", [
        (SessionNotFoundError("s-1"), NotFoundException, 404, ErrorCode.SESSION_NOT_FOUND),
        (SessionInactiveError("s-1"), AppException, 409, ErrorCode.SESSION_INACTIVE),
        (InvalidStateTransitionError("idle", "error"), StateMachineException, 409, ErrorCode.INVALID_STATE_TRANSITION),
        (InvalidStateError("cancel", "idle"), StateMachineException, 409, ErrorCode.INVALID_STATE),
        (ConfirmationAlreadyPendingError("s-1"), ConfirmationException, 409, ErrorCode.CONFIRMATION_ALREADY_PENDING),
        (NoPendingConfirmationError("s-1"), ConfirmationException, 409, ErrorCode.NO_PENDING_CONFIRMATION),
        (UnknownWorkflowError("nope"), WorkflowException, 404, ErrorCode.WORKFLOW_NOT_FOUND),
        (NoActiveWorkflowError("s-1"), WorkflowException, 409, ErrorCode.NO_ACTIVE_WORKFLOW),
        (WorkflowAlreadyActiveError("s-1", "threat_hunting"), WorkflowException, 409, ErrorCode.WORKFLOW_ALREADY_ACTIVE),
        (WorkflowStepOutOfRangeError("threat_hunting", 5, 5), WorkflowException, 409, ErrorCode.WORKFLOW_STEP_OUT_OF_RANGE),
        (ServiceTimeoutError("command_executor", 30.0), ExternalServiceException, 503, ErrorCode.EXTERNAL_SERVICE_TIMEOUT),
        (CircuitBreakerOpenError("command_executor", 12.0), ExternalServiceException, 503, ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE),
        (CommandExecutionError("quarantine purge --all", "permission denied"), ExternalServiceException, 503, ErrorCode.COMMAND_EXECUTION_FAILED),
        (CollaboratorNotConfiguredError("COMMAND_EXECUTOR"), ExternalServiceException, 503, ErrorCode.COLLABORATOR_NOT_CONFIGURED),
        (StorageUnavailableError("redis", "add_message"), AppException, 503, ErrorCode.STORAGE_UNAVAILABLE),
    ])
    def test_placement(self, exc, base, status, code):
        assert isinstance(exc, base)
        assert exc.status_code == status
        assert exc.error_code == code

    @pytest.mark.unit
    def test_external_errors_name_the_service(self):
        exc = ServiceTimeoutError("command_executor", 30.0)
        assert exc.details == {"timeout_seconds": 30.0, "service": "command_executor"}
        assert exc.message == "command_executor request timed out after 30.0s"

    @pytest.mark.unit
    def test_command_execution_error_carries_command(self):
        exc = CommandExecutionError("quarantine purge --all", "permission denied")
        assert str(exc) == "permission denied"
        assert exc.details["command"] == "quarantine purge --all"
        assert exc.details["service"] == "command_executor"

    @pytest.mark.unit
    def test_step_out_of_range_details(self):
        exc = WorkflowStepOutOfRangeError("incident_response", 6, 6)
        assert exc.details == {"workflow_id": "incident_response", "current_step": 6, "total_steps": 6}

    @pytest.mark.unit
    def test_confirmation_without_session_has_no_details(self):
        assert NoPendingConfirmationError().details == {}
