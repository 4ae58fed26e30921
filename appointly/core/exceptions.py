"""
Domain exceptions for the Appointly backend.

Services raise these; the API layer maps them to HTTP responses through the
handler registered in ``appointly.api.errors``. The two delivery failures are
only ever raised inside queue handlers and decide whether a job is retried.
"""

from __future__ import annotations

from typing import Any, Optional


class AppointlyError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"


class ValidationError(AppointlyError):
    """Malformed input, rejected before any side effect."""

    status_code = 400
    code = "validation_error"


class NotFoundError(AppointlyError):
    """A referenced provider, customer, booking or job does not exist."""

    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: Any) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} with id '{resource_id}' not found.",
            details={"resource": resource, "id": str(resource_id)},
        )


class ConflictError(AppointlyError):
    """Availability violation or duplicate resource.

    Mapped to 400 so that clients see the same status whether the conflict
    was found by the availability check or by the storage layer.
    """

    status_code = 400
    code = "conflict"


class ForbiddenError(AppointlyError):
    """Actor is not allowed to perform the action."""

    status_code = 403
    code = "forbidden"


class InvalidStateTransitionError(AppointlyError):
    """Booking state machine violation."""

    status_code = 400
    code = "invalid_state_transition"

    def __init__(self, reason: str, *, current: str | None = None, target: str | None = None) -> None:
        super().__init__(reason, details={"current": current, "target": target})


# ---------------------------------------------------------------------------
# Delivery failures (queue handlers only)
# ---------------------------------------------------------------------------

class DeliveryFailure(AppointlyError):
    """Base class for failures raised by queue handlers."""

    retryable: bool = True


class TransientDeliveryFailure(DeliveryFailure):
    """Retryable failure: the job is rescheduled with backoff."""

    code = "transient_delivery_failure"
    retryable = True


class PermanentDeliveryFailure(DeliveryFailure):
    """Non-retryable failure, e.g. a malformed recipient: the job fails at once."""

    code = "permanent_delivery_failure"
    retryable = False
