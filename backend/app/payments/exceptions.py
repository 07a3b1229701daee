"""Error kinds raised by the payments subsystem."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class PaymentError(Exception):
    """Base class for payment failures surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class ConfigurationError(PaymentError):
    """A backend is missing secrets or product mappings."""

    code: str = "payment_not_configured"
    message: str = "Payment provider is not configured"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class ProviderNotEnabledError(ConfigurationError):
    code: str = "provider_not_enabled"
    message: str = "Payment provider is not enabled"


@dataclass
class ValidationError(PaymentError):
    """Unknown plan, missing identifiers and other caller mistakes."""

    code: str = "invalid_payment_request"
    message: str = "Invalid payment request"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class AuthenticationError(PaymentError):
    """Caller is not allowed to act on the payment."""

    code: str = "not_authenticated"
    message: str = "Not authenticated"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass
class OwnershipMismatchError(AuthenticationError):
    code: str = "ownership_mismatch"
    message: str = "Payment does not belong to the authenticated user"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class UpstreamError(PaymentError):
    """Network or backend failure; safe to retry with backoff."""

    code: str = "payment_upstream_error"
    message: str = "Payment provider request failed"
    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass
class BusinessRuleViolation(PaymentError):
    code: str = "payment_rejected"
    message: str = "Payment rejected"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class AlreadySubscribedError(BusinessRuleViolation):
    code: str = "alreadySubscribed"
    message: str = "Account already has an active subscription"


@dataclass
class AlreadyProcessed(PaymentError):
    """Raised by persistence when the idempotency key already exists.

    The reconciliation engine converts this into a successful
    ``already_processed`` outcome; it never reaches API callers.
    """

    code: str = "already_processed"
    message: str = "Payment has already been processed"
    status_code: int = status.HTTP_200_OK


__all__ = [
    "AlreadyProcessed",
    "AlreadySubscribedError",
    "AuthenticationError",
    "BusinessRuleViolation",
    "ConfigurationError",
    "OwnershipMismatchError",
    "PaymentError",
    "ProviderNotEnabledError",
    "UpstreamError",
    "ValidationError",
]
