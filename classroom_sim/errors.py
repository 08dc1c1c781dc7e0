"""
classroom_sim/errors.py
Centralized error taxonomy for the scenario lifecycle and job pipeline.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Malformed input (ValidationError)
- 403: Access check failed (Forbidden)
- 404: Scenario / outcome / job / ledger entry missing (NotFound)
- 409: Lifecycle precondition violated (StateConflict)
- 500: Computation or storage failure during processing (DependencyFailure)
"""

import logging
from typing import Optional, Dict, Any, List

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_VARIABLES = "INVALID_VARIABLES"
    INVALID_FORMULA = "INVALID_FORMULA"

    FORBIDDEN = "FORBIDDEN"
    NOT_ENROLLED = "NOT_ENROLLED"

    NOT_FOUND = "NOT_FOUND"

    STATE_CONFLICT = "STATE_CONFLICT"
    ALREADY_PUBLISHED = "ALREADY_PUBLISHED"
    ALREADY_CLOSED = "ALREADY_CLOSED"
    NOT_PUBLISHED = "NOT_PUBLISHED"
    ACTIVE_SCENARIO_CONFLICT = "ACTIVE_SCENARIO_CONFLICT"
    EDIT_NOT_ALLOWED = "EDIT_NOT_ALLOWED"
    OUTCOME_NOT_SET = "OUTCOME_NOT_SET"
    JOB_NOT_PENDING = "JOB_NOT_PENDING"
    JOBS_IN_FLIGHT = "JOBS_IN_FLIGHT"
    RERUN_IN_PROGRESS = "RERUN_IN_PROGRESS"
    DUPLICATE_LEDGER_ENTRY = "DUPLICATE_LEDGER_ENTRY"

    DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"
    JOB_PROCESSING_FAILED = "JOB_PROCESSING_FAILED"
    RERUN_FAILED = "RERUN_FAILED"
    LEDGER_CONTINUITY = "LEDGER_CONTINUITY"


class SimulationError(Exception):
    """Base exception with consistent structure"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal Error"
    default_code = ErrorCode.DEPENDENCY_FAILURE

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


# =============================================================================
# 400 - Validation
# =============================================================================

class ValidationError(SimulationError):
    """Malformed input: variables, formulas, request fields."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Validation Error"
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        errors: Optional[List[Dict[str, str]]] = None
    ):
        self.errors = errors or []
        if self.errors:
            details = dict(details or {})
            details["errors"] = self.errors
        super().__init__(message, code, details)


class FormulaError(ValidationError):
    """Outcome formula could not be parsed or evaluated."""
    default_code = ErrorCode.INVALID_FORMULA


# =============================================================================
# 403 / 404
# =============================================================================

class Forbidden(SimulationError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"
    default_code = ErrorCode.FORBIDDEN


class NotFound(SimulationError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    default_code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        self.resource = resource
        self.identifier = identifier
        super().__init__(message, details={"resource": resource, "id": identifier})


# =============================================================================
# 409 - Lifecycle preconditions
# =============================================================================

class StateConflict(SimulationError):
    """A lifecycle precondition was violated; nothing was persisted."""
    status_code = status.HTTP_409_CONFLICT
    error = "State Conflict"
    default_code = ErrorCode.STATE_CONFLICT


class AlreadyPublished(StateConflict):
    default_code = ErrorCode.ALREADY_PUBLISHED

    def __init__(self, scenario_id: int):
        super().__init__("Scenario is already published", details={"scenario_id": scenario_id})


class AlreadyClosed(StateConflict):
    default_code = ErrorCode.ALREADY_CLOSED

    def __init__(self, scenario_id: int, action: str = "modify"):
        super().__init__(f"Cannot {action} a closed scenario", details={"scenario_id": scenario_id})


class NotPublished(StateConflict):
    default_code = ErrorCode.NOT_PUBLISHED

    def __init__(self, scenario_id: int):
        super().__init__("Scenario is not published", details={"scenario_id": scenario_id})


class ActiveScenarioConflict(StateConflict):
    default_code = ErrorCode.ACTIVE_SCENARIO_CONFLICT

    def __init__(self, active_scenario_id: int, active_scenario_title: str):
        self.active_scenario_id = active_scenario_id
        self.active_scenario_title = active_scenario_title
        super().__init__(
            f'Another scenario is already active ("{active_scenario_title}"). '
            "Unpublish or close the active scenario before publishing a new one.",
            details={
                "active_scenario_id": active_scenario_id,
                "active_scenario_title": active_scenario_title
            }
        )


class EditNotAllowed(StateConflict):
    default_code = ErrorCode.EDIT_NOT_ALLOWED

    def __init__(self, scenario_id: int):
        super().__init__(
            "Scenario cannot be edited after it has been published and closed",
            details={"scenario_id": scenario_id}
        )


class OutcomeNotSet(StateConflict):
    default_code = ErrorCode.OUTCOME_NOT_SET

    def __init__(self, scenario_id: int, action: str = "running"):
        super().__init__(
            f"Scenario outcome must be set before {action}",
            details={"scenario_id": scenario_id}
        )


class JobNotPending(StateConflict):
    default_code = ErrorCode.JOB_NOT_PENDING

    def __init__(self, job_id: int, current_status: Optional[str]):
        super().__init__(
            f"Job is not pending: {current_status}",
            details={"job_id": job_id, "status": current_status}
        )


class JobsInFlight(StateConflict):
    default_code = ErrorCode.JOBS_IN_FLIGHT

    def __init__(self, scenario_id: int, processing: int):
        super().__init__(
            f"{processing} job(s) are still processing for this scenario",
            details={"scenario_id": scenario_id, "processing": processing}
        )


class RerunInProgress(StateConflict):
    default_code = ErrorCode.RERUN_IN_PROGRESS

    def __init__(self, scenario_id: int):
        super().__init__(
            "A rerun is already in progress for this scenario",
            details={"scenario_id": scenario_id}
        )


class DuplicateLedgerEntry(StateConflict):
    default_code = ErrorCode.DUPLICATE_LEDGER_ENTRY

    def __init__(self, scenario_id: int, user_id: int):
        super().__init__(
            "Ledger entry already exists for this scenario and user. "
            "Delete existing entry before creating a new one.",
            details={"scenario_id": scenario_id, "user_id": user_id}
        )


# =============================================================================
# 500 - Dependency failures
# =============================================================================

class DependencyFailure(SimulationError):
    """Computation or storage error during job processing."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Dependency Failure"
    default_code = ErrorCode.DEPENDENCY_FAILURE


class JobProcessingError(DependencyFailure):
    default_code = ErrorCode.JOB_PROCESSING_FAILED

    def __init__(self, job_id: int, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} failed: {reason}", details={"job_id": job_id})


class RerunFailed(DependencyFailure):
    default_code = ErrorCode.RERUN_FAILED

    def __init__(self, scenario_id: int, step: str, reason: str):
        self.step = step
        super().__init__(
            f"Rerun of scenario {scenario_id} failed during '{step}': {reason}",
            details={"scenario_id": scenario_id, "step": step}
        )


class LedgerContinuityError(DependencyFailure):
    default_code = ErrorCode.LEDGER_CONTINUITY

    def __init__(self, cash_before: float, net_profit: float, cash_after: float):
        super().__init__(
            f"Cash continuity error: cash_after ({cash_after}) must equal "
            f"cash_before ({cash_before}) + net_profit ({net_profit})",
            details={"cash_before": cash_before, "net_profit": net_profit, "cash_after": cash_after}
        )


def describe_exception(error: BaseException) -> str:
    """Short, loggable description of an arbitrary exception."""
    if isinstance(error, SimulationError):
        return error.message
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
