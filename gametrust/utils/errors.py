"""Domain error taxonomy and standardized error payloads."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class DomainError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class ValidationError(DomainError):
    """Malformed input, rejected before any state is read."""

    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(DomainError):
    code = "FORBIDDEN"
    status_code = 403


class StateConflictError(DomainError):
    """Transition not permitted from the current state, or a stale version token."""

    code = "STATE_CONFLICT"
    status_code = 409


class DuplicateDisputeError(DomainError):
    code = "DUPLICATE_DISPUTE"
    status_code = 409


class WindowClosedError(DomainError):
    code = "DISPUTE_WINDOW_CLOSED"
    status_code = 409


class PaymentProviderError(DomainError):
    """Gateway failure.

    ``transient`` errors (timeouts, rate limits, 5xx) are retried by the ledger
    with backoff; anything else fails the settlement immediately.
    """

    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502

    def __init__(self, message: str, *, transient: bool, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.transient = transient


__all__ = [
    "error_response",
    "DomainError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "StateConflictError",
    "DuplicateDisputeError",
    "WindowClosedError",
    "PaymentProviderError",
]
