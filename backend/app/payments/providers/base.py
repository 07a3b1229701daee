"""Contract implemented by every payment backend."""
from __future__ import annotations

import hashlib
import hmac
from typing import List, Optional, Protocol, Sequence, Union

from ..models import CallbackEvent, CheckoutSession, CheckoutSessionParams, Plan, ProviderType, VerificationResult

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


class PaymentProvider(Protocol):
    """External payment backend integration."""

    name: ProviderType
    supported_methods: Sequence[str]

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        """Create a backend checkout session carrying the account and plan metadata."""

    def verify_payment(self, logical_id: str) -> VerificationResult:
        """Fetch the payment status for ``logical_id`` without mutating account state."""

    def handle_callback(self, raw_payload: bytes, signature: Optional[str] = None) -> Optional[CallbackEvent]:
        """Authenticate and normalize a callback, returning ``None`` when it cannot be trusted."""

    def list_supported_plans(self) -> List[Plan]:
        ...

    def is_configured(self) -> bool:
        """Report whether required secrets and plan mappings are present."""


def compute_signature(secret: str, payload: Union[bytes, str]) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""

    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_matches(secret: str, payload: Union[bytes, str], signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


def is_placeholder(identifier: Optional[str]) -> bool:
    """Return ``True`` for an unresolved redirect template such as ``{CHECKOUT_SESSION_ID}``."""

    if not identifier:
        return False
    return CHECKOUT_SESSION_PLACEHOLDER in identifier or ("{" in identifier and "}" in identifier)


def parse_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
