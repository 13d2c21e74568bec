"""Domain exceptions.

Every error the engine raises derives from :class:`ReceiptflowError` so
the API layer can translate it into a JSON response with a stable
``code`` and an HTTP status.  Local failures (validation, transition
table, permissions) are raised before any store call; only conflicts and
store failures originate from persistence.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from receiptflow.models.schemas import DenialReason


class ReceiptflowError(Exception):
    """Base exception for all engine errors."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(ReceiptflowError):
    """Malformed input: claim fields, negative counts, bad cursors."""

    status_code = HTTPStatus.UNPROCESSABLE_ENTITY
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, details)


class InvalidTransitionError(ReceiptflowError):
    """The (status, event) pair is not in the claim transition table."""

    status_code = HTTPStatus.CONFLICT
    code = "INVALID_TRANSITION"

    def __init__(self, status: str, event: str):
        self.status = status
        self.event = event
        super().__init__(
            f"Cannot apply '{event}' to a claim in status '{status}'",
            {"status": status, "event": event},
        )


class ClaimPermissionError(ReceiptflowError):
    """The actor is not allowed to perform the requested claim operation."""

    status_code = HTTPStatus.FORBIDDEN
    code = "CLAIM_PERMISSION_DENIED"


class NotFoundError(ReceiptflowError):
    status_code = HTTPStatus.NOT_FOUND
    code = "NOT_FOUND"


class EntitlementDeniedError(ReceiptflowError):
    """The subscription does not allow the action; carries the upgrade path."""

    status_code = HTTPStatus.PAYMENT_REQUIRED
    code = "ENTITLEMENT_DENIED"

    def __init__(self, denial: "DenialReason", message: Optional[str] = None):
        self.denial = denial
        super().__init__(
            message or f"{denial.dimension.value} limit reached for tier {denial.current_tier.value}",
            {"denial": denial.model_dump(mode="json")},
        )


class StaleStateConflictError(ReceiptflowError):
    """Optimistic-concurrency rejection: the claim changed since it was read."""

    status_code = HTTPStatus.CONFLICT
    code = "STALE_STATE"

    def __init__(self, claim_id: str, expected_version: int):
        self.claim_id = claim_id
        self.expected_version = expected_version
        super().__init__(
            "This claim changed, please refresh",
            {"claim_id": claim_id, "expected_version": expected_version},
        )


class RemoteUnavailableError(ReceiptflowError):
    """The store or payment processor could not be reached."""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    code = "REMOTE_UNAVAILABLE"

    def __init__(self, message: str = "Service temporarily unavailable, please retry", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"retryable": True, **(details or {})})


class ConfigurationError(ReceiptflowError):
    code = "CONFIGURATION_ERROR"


__all__ = [
    "ReceiptflowError",
    "ValidationError",
    "InvalidTransitionError",
    "ClaimPermissionError",
    "NotFoundError",
    "EntitlementDeniedError",
    "StaleStateConflictError",
    "RemoteUnavailableError",
    "ConfigurationError",
]
