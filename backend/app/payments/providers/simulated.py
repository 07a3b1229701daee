"""Development payment backend that never leaves the process."""
from __future__ import annotations

import json
import logging
import secrets
import string
import time
from threading import Lock
from typing import Dict, List, Optional
from urllib.parse import urlencode

from ..catalog import PRO_MONTHLY_CREDITS, get_plan, list_plans
from ..config import PaymentConfig
from ..models import (
    BillingType,
    CallbackEvent,
    CallbackEventType,
    CheckoutSession,
    CheckoutSessionParams,
    Plan,
    ProviderType,
    VerificationResult,
)
from .base import signature_matches

logger = logging.getLogger(__name__)

MOCK_SESSION_PREFIX = "mock_session_"

# Values reported for sessions this process did not create.
_DEMO_SESSION = {
    "plan_id": "pro",
    "credit_grant": str(PRO_MONTHLY_CREDITS),
    "billing_type": BillingType.RECURRING.value,
    "amount_minor_units": "599",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class MockPaymentProvider:
    """Simulated processor for local development and tests."""

    name = ProviderType.MOCK
    supported_methods = ("mock_card", "mock_alipay", "mock_wechat")

    def __init__(self, config: Optional[PaymentConfig] = None) -> None:
        self._webhook_secret = config.mock_webhook_secret if config else None
        self._sessions: Dict[str, Dict[str, str]] = {}
        self._lock = Lock()

    def is_configured(self) -> bool:
        return True

    def list_supported_plans(self) -> List[Plan]:
        return list_plans()

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        plan = get_plan(params.plan_id)
        session_id = f"{MOCK_SESSION_PREFIX}{int(time.time() * 1000)}_{_random_suffix()}"
        metadata = {
            "account_id": params.account_id,
            "plan_id": plan.id,
            "credit_grant": str(plan.credit_grant),
            "billing_type": plan.billing_type.value,
            "provider": self.name.value,
            "amount_minor_units": str(plan.price_minor_units),
        }
        with self._lock:
            self._sessions[session_id] = dict(metadata)

        base_url = params.success_url.split("/payment/success")[0]
        query = urlencode(
            {
                "session_id": session_id,
                "plan_id": plan.id,
                "user_id": params.account_id,
                "credits": plan.credit_grant,
                "amount": plan.price_minor_units,
                "provider": self.name.value,
            }
        )
        return CheckoutSession(
            logical_id=session_id,
            redirect_url=f"{base_url}/payment/mock?{query}",
            provider=self.name,
            metadata=metadata,
        )

    def verify_payment(self, logical_id: str) -> VerificationResult:
        if not logical_id.startswith(MOCK_SESSION_PREFIX):
            return VerificationResult.failed(logical_id, self.name, "Invalid simulated payment session")

        with self._lock:
            stored = self._sessions.get(logical_id)
        data = stored or _DEMO_SESSION
        if stored is None:
            logger.debug("Unknown simulated session %s, reporting demo values", logical_id)

        return VerificationResult(
            succeeded=True,
            logical_id=logical_id,
            provider=self.name,
            account_id=data.get("account_id"),
            plan_id=data["plan_id"],
            credit_grant=int(data["credit_grant"]),
            billing_type=BillingType(data["billing_type"]),
            amount_minor_units=int(data["amount_minor_units"]),
            currency="USD",
        )

    def handle_callback(self, raw_payload: bytes, signature: Optional[str] = None) -> Optional[CallbackEvent]:
        if not self._webhook_secret:
            logger.warning("Simulated callback rejected: MOCK_WEBHOOK_SECRET is not set")
            return None
        if not signature_matches(self._webhook_secret, raw_payload, signature):
            logger.warning("Simulated callback rejected: signature mismatch")
            return None

        try:
            payload = json.loads(raw_payload)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None

        raw_type = str(payload.get("type") or CallbackEventType.PAYMENT_COMPLETED.value)
        try:
            event_type = CallbackEventType(raw_type)
        except ValueError:
            event_type = CallbackEventType.IGNORED

        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        metadata = payload.get("metadata") or data.get("metadata") or {}
        extracted: Dict[str, str] = {}
        if isinstance(metadata, dict):
            extracted = {str(k): str(v) for k, v in metadata.items() if v is not None}

        logical_id = data.get("session_id") or data.get("id") or payload.get("session_id")
        if logical_id and "account_id" not in extracted:
            with self._lock:
                stored = self._sessions.get(str(logical_id))
            if stored:
                extracted.update(stored)

        return CallbackEvent(
            event_id=str(payload.get("id") or f"mock_webhook_{int(time.time() * 1000)}"),
            event_type=event_type,
            provider=self.name,
            logical_id=str(logical_id) if logical_id else None,
            raw_payload=payload,
            extracted_metadata=extracted,
        )


__all__ = ["MOCK_SESSION_PREFIX", "MockPaymentProvider"]
