"""Domain exceptions raised by the service layer.

Each exception carries the HTTP status and a stable ``code`` so a single
handler in ``exam_portal.main`` can render it. Services never build HTTP
responses themselves.
"""

from typing import Optional


class PortalError(Exception):
    status_code = 400
    code = "error"
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(PortalError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class Forbidden(PortalError):
    status_code = 403
    code = "forbidden"
    default_message = "Access forbidden"


class OutOfWindow(PortalError):
    code = "out_of_window"
    default_message = "Exam is not open at this time"


class AlreadyAttempted(PortalError):
    code = "already_attempted"
    default_message = "You have already attempted this exam"


class AttemptClosed(PortalError):
    code = "attempt_closed"
    default_message = "Exam is already submitted or closed"


class TimeExpired(PortalError):
    code = "time_expired"
    default_message = "Time has expired"


class QuestionNotInExam(PortalError):
    status_code = 404
    code = "question_not_in_exam"
    default_message = "Question not found in this exam"


class InvalidState(PortalError):
    code = "invalid_state"
    default_message = "Operation not allowed in the attempt's current state"


class DuplicateResult(PortalError):
    """A result already exists for the attempt. Callers turn this into the existing result."""

    status_code = 409
    code = "duplicate_result"
    default_message = "Result already exists for this attempt"


# --- Sandbox ---


class SandboxError(PortalError):
    code = "sandbox_error"
    default_message = "SQL could not be executed"


class DangerousStatement(SandboxError):
    code = "dangerous_statement"
    default_message = "Dangerous SQL detected. Only single SELECT statements are allowed."


class ForbiddenTable(SandboxError):
    status_code = 403
    code = "forbidden_table"
    default_message = "Access to system tables is restricted."


class SandboxExecutionError(SandboxError):
    code = "sql_error"


class SandboxTimeout(SandboxExecutionError):
    code = "sql_timeout"
    default_message = "Query execution timed out"


class DataIntegrityError(PortalError):
    status_code = 500
    code = "data_integrity"
    default_message = "Inconsistent exam data; contact an administrator"


class NotAuthenticated(PortalError):
    status_code = 401
    code = "not_authenticated"
    default_message = "Login required"
