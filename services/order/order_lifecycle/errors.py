"""
Order Service — Domain errors

Every rule violation in the workflow raises one of these. They are
client-visible and recoverable; the HTTP layer renders them with the
status code each class carries.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for all order workflow errors."""

    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(WorkflowError):
    """Order or request is absent, or not visible to the caller."""

    status_code = 404
    code = "not_found"


class InvalidTransitionError(WorkflowError):
    """Target state is unreachable from the current state."""

    status_code = 409
    code = "invalid_transition"


class ValidationFailedError(WorkflowError):
    """Required fields are missing or malformed."""

    status_code = 422
    code = "validation_failed"


class ForbiddenError(WorkflowError):
    """Role or ownership mismatch."""

    status_code = 403
    code = "forbidden"


class ConflictError(WorkflowError):
    """Concurrent mutation, duplicate pending request or replayed decision."""

    status_code = 409
    code = "conflict"


class WindowExpiredError(WorkflowError):
    """A time-bounded right was exercised past its boundary."""

    status_code = 422
    code = "window_expired"


class StoreUnavailableError(WorkflowError):
    """The order store cannot be reached. Nothing was written."""

    status_code = 503
    code = "store_unavailable"
