"""SaaS billing processor backed by the Creem REST API."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from ..catalog import PLAN_CATALOG, find_plan, get_plan, list_plans
from ..config import PaymentConfig
from ..exceptions import ConfigurationError, UpstreamError
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
from .base import parse_int, signature_matches

logger = logging.getLogger(__name__)

CREEM_API_URL = "https://api.creem.io"
CREEM_TEST_API_URL = "https://test-api.creem.io"

_EVENT_TYPES: Dict[str, CallbackEventType] = {
    "checkout.completed": CallbackEventType.CHECKOUT_COMPLETED,
    "payment.completed": CallbackEventType.PAYMENT_COMPLETED,
    "subscription.paid": CallbackEventType.SUBSCRIPTION_RENEWED,
    "subscription.renewed": CallbackEventType.SUBSCRIPTION_RENEWED,
    "invoice.payment_succeeded": CallbackEventType.SUBSCRIPTION_RENEWED,
    "subscription.canceled": CallbackEventType.SUBSCRIPTION_CANCELLED,
    "subscription.cancelled": CallbackEventType.SUBSCRIPTION_CANCELLED,
    "subscription.expired": CallbackEventType.SUBSCRIPTION_CANCELLED,
    "subscription.deleted": CallbackEventType.SUBSCRIPTION_CANCELLED,
    "payment.failed": CallbackEventType.PAYMENT_FAILED,
    "invoice.payment_failed": CallbackEventType.PAYMENT_FAILED,
    "subscription.past_due": CallbackEventType.PAYMENT_FAILED,
}


def build_request_id(account_id: str, plan_id: str, *, now_ms: Optional[int] = None) -> str:
    """Opaque tracking token echoed back by Creem: ``accountId_planId_timestamp``."""

    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{account_id}_{plan_id}_{timestamp}"


def parse_request_id(request_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Recover ``(account_id, plan_id)`` from a token built by :func:`build_request_id`.

    Plan ids may themselves contain underscores, so known plan ids are matched
    first; unknown plans fall back to a plain right split.
    """

    if not request_id:
        return None, None
    head, sep, timestamp = request_id.rpartition("_")
    if not sep or not timestamp.isdigit():
        head = request_id
    for plan_id in sorted(PLAN_CATALOG, key=len, reverse=True):
        suffix = f"_{plan_id}"
        if head.endswith(suffix) and len(head) > len(suffix):
            return head[: -len(suffix)], plan_id
    parts = head.rsplit("_", 1)
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    return None, None


def _coerce_metadata(value: Any) -> Dict[str, str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _nested(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


class CreemPaymentProvider:
    """Creem checkout integration over its REST API."""

    name = ProviderType.CREEM
    supported_methods = ("card", "bank_transfer", "digital_wallet")

    def __init__(
        self,
        config: PaymentConfig,
        *,
        urlopen: Optional[Callable[..., Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._urlopen = urlopen or urllib_request.urlopen
        self._clock = clock or time.time
        self._base_url = CREEM_TEST_API_URL if config.creem_test_mode else CREEM_API_URL

    def is_configured(self) -> bool:
        if not self._config.creem_api_key:
            return False
        return any(self._config.creem_product_id(plan_id) for plan_id in PLAN_CATALOG)

    def list_supported_plans(self) -> List[Plan]:
        return list_plans()

    def _product_id(self, plan_id: str) -> str:
        product_id = self._config.creem_product_id(plan_id)
        if not product_id:
            raise ConfigurationError(
                code="missing_product_mapping",
                message=f"No Creem product configured for plan {plan_id}",
                detail={"provider": self.name.value, "plan_id": plan_id},
            )
        return product_id

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Mapping[str, str]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self._config.creem_api_key:
            raise ConfigurationError(message="Creem is not configured", detail={"provider": self.name.value})

        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{urllib_parse.urlencode(query)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib_request.Request(
            url,
            data=data,
            method=method,
            headers={
                "x-api-key": self._config.creem_api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        with self._urlopen(request, timeout=self._config.http_timeout_seconds) as response:
            raw = response.read()
        payload = json.loads(raw.decode("utf-8")) if raw else {}
        return payload if isinstance(payload, dict) else {}

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        plan = get_plan(params.plan_id)
        product_id = self._product_id(plan.id)
        request_id = build_request_id(params.account_id, plan.id, now_ms=int(self._clock() * 1000))
        metadata = {
            "account_id": params.account_id,
            "plan_id": plan.id,
            "credit_grant": str(plan.credit_grant),
            "billing_type": plan.billing_type.value,
            "provider": self.name.value,
            "request_id": request_id,
        }

        try:
            checkout = self._request(
                "POST",
                "/v1/checkouts",
                body={
                    "product_id": product_id,
                    "request_id": request_id,
                    "success_url": params.success_url,
                    "customer": {"email": params.account_email},
                    "metadata": metadata,
                },
            )
        except (OSError, ValueError) as exc:
            logger.exception("Creem checkout creation failed", extra={"plan_id": plan.id})
            raise UpstreamError(message="Creem checkout creation failed", detail={"provider": self.name.value}) from exc

        checkout_id = checkout.get("id")
        if not checkout_id:
            raise UpstreamError(message="Creem returned a checkout without an id", detail={"provider": self.name.value})

        return CheckoutSession(
            logical_id=str(checkout_id),
            redirect_url=str(checkout.get("checkout_url") or checkout.get("url") or ""),
            provider=self.name,
            metadata={**metadata, "product_id": product_id},
        )

    def verify_payment(self, logical_id: str) -> VerificationResult:
        try:
            checkout = self._request("GET", "/v1/checkouts", query={"checkout_id": logical_id})
        except urllib_error.HTTPError as exc:
            if exc.code in {400, 404}:
                return VerificationResult.failed(logical_id, self.name, "Unknown checkout")
            raise UpstreamError(message="Creem verification failed", detail={"provider": self.name.value}) from exc
        except (OSError, ValueError) as exc:
            raise UpstreamError(message="Creem verification failed", detail={"provider": self.name.value}) from exc

        if checkout.get("status") != "completed":
            return VerificationResult.failed(logical_id, self.name, "Payment not completed")

        metadata = self._business_metadata(checkout)
        billing_type = metadata.get("billing_type")
        currency = _nested(checkout, "order", "currency") or checkout.get("currency") or "USD"
        return VerificationResult(
            succeeded=True,
            logical_id=str(checkout.get("id") or logical_id),
            provider=self.name,
            account_id=metadata.get("account_id"),
            plan_id=metadata.get("plan_id"),
            credit_grant=parse_int(metadata.get("credit_grant")),
            billing_type=BillingType(billing_type) if billing_type else None,
            amount_minor_units=parse_int(_nested(checkout, "order", "amount") or checkout.get("amount")),
            currency=str(currency).upper(),
        )

    def _business_metadata(self, obj: Mapping[str, Any]) -> Dict[str, str]:
        """Structured metadata, falling back to the echoed request token."""

        metadata = _coerce_metadata(obj.get("metadata"))
        request_id = obj.get("request_id") or metadata.get("request_id")
        if request_id and not metadata.get("account_id"):
            account_id, plan_id = parse_request_id(str(request_id))
            if account_id:
                metadata["account_id"] = account_id
            if plan_id and not metadata.get("plan_id"):
                metadata["plan_id"] = plan_id

        plan = find_plan(metadata.get("plan_id"))
        if plan is not None:
            metadata.setdefault("credit_grant", str(plan.credit_grant))
            metadata.setdefault("billing_type", plan.billing_type.value)
        return metadata

    def handle_callback(self, raw_payload: bytes, signature: Optional[str] = None) -> Optional[CallbackEvent]:
        secret = self._config.creem_webhook_secret
        if not secret or not signature_matches(secret, raw_payload, signature):
            logger.warning("Creem callback rejected: signature mismatch")
            return None

        try:
            payload = json.loads(raw_payload)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None

        raw_type = str(payload.get("eventType") or payload.get("event_type") or payload.get("type") or "")
        event_type = _EVENT_TYPES.get(raw_type, CallbackEventType.IGNORED)
        obj = payload.get("object") or payload.get("data") or {}
        if not isinstance(obj, dict):
            obj = {}

        event_id = str(payload.get("id") or f"creem_webhook_{int(self._clock() * 1000)}")
        if event_type == CallbackEventType.SUBSCRIPTION_RENEWED:
            logical_id = obj.get("last_transaction_id") or event_id
        else:
            logical_id = obj.get("id")

        metadata = self._business_metadata(obj)
        email = _nested(obj, "customer", "email")
        if email:
            metadata["customer_email"] = str(email)
        amount = _nested(obj, "order", "amount") or obj.get("amount")
        if amount is not None:
            metadata["amount_minor_units"] = str(amount)
        currency = _nested(obj, "order", "currency") or obj.get("currency")
        if currency:
            metadata["currency"] = str(currency).upper()
        if obj.get("id"):
            metadata.setdefault("object_id", str(obj["id"]))

        return CallbackEvent(
            event_id=event_id,
            event_type=event_type,
            provider=self.name,
            logical_id=str(logical_id) if logical_id else None,
            raw_payload=payload,
            extracted_metadata=metadata,
        )

    def cancel_subscription(self, subscription_id: str) -> bool:
        try:
            self._request("POST", f"/v1/subscriptions/{urllib_parse.quote(subscription_id)}/cancel")
        except (OSError, ValueError):
            logger.exception("Failed to cancel Creem subscription", extra={"subscription_id": subscription_id})
            return False
        return True

    def upgrade_subscription(self, subscription_id: str, new_plan_id: str) -> bool:
        plan = get_plan(new_plan_id)
        product_id = self._product_id(plan.id)
        try:
            self._request(
                "POST",
                f"/v1/subscriptions/{urllib_parse.quote(subscription_id)}/upgrade",
                body={"product_id": product_id, "update_behavior": "proration-charge-immediately"},
            )
        except (OSError, ValueError):
            logger.exception("Failed to upgrade Creem subscription", extra={"subscription_id": subscription_id})
            return False
        return True


__all__ = ["CreemPaymentProvider", "build_request_id", "parse_request_id"]
