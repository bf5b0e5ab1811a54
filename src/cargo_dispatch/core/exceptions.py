"""Standardized exception hierarchy for the dispatch service."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cargo_dispatch.booking import Booking


class DispatchError(Exception):
    """Base exception for all dispatch service errors."""

    code = "dispatch_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(DispatchError):
    """Errors that may succeed on retry."""

    code = "transient_error"


class NetworkError(TransientError):
    """Network-related transient errors (timeout, connection refused)."""

    code = "network_error"


class ServiceUnavailableError(TransientError):
    """External service temporarily unavailable (5xx responses)."""

    code = "service_unavailable"


class PersistenceError(TransientError):
    """Database write failed or lost an optimistic concurrency check."""

    code = "persistence_error"


class PermanentError(DispatchError):
    """Errors that will not succeed on retry."""

    code = "permanent_error"


class ValidationError(PermanentError):
    """Malformed input rejected before any state mutation."""

    code = "validation_error"


class NotFoundError(PermanentError):
    """Requested entity does not exist."""

    code = "not_found"


class InvalidTransition(PermanentError):
    """Status change not allowed from the entity's current status."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        current_status: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, {"current_status": current_status, **(details or {})})
        self.current_status = current_status


class StaleAccept(PermanentError):
    """Driver accepted an offer the booking no longer holds open."""

    code = "stale_accept"


class StaleDecline(PermanentError):
    """Driver declined an offer the booking no longer holds open."""

    code = "stale_decline"


class NoDriversAvailable(PermanentError):
    """Candidate list exhausted; the booking has expired."""

    code = "no_drivers_available"

    def __init__(self, message: str, booking: "Booking", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            {"booking_id": booking.booking_id, "status": booking.status.value, **(details or {})},
        )
        self.booking = booking


class AlreadySettled(PermanentError):
    """Attempt to recompute or overwrite a value that is already committed."""

    code = "already_settled"


class GatewayError(PermanentError):
    """Payment gateway call failed or timed out after retries."""

    code = "gateway_error"


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    code = "configuration_error"
