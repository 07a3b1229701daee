"""Commercial card processor backed by Stripe Checkout."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import stripe

from ..catalog import find_plan, get_plan, list_plans
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
from .base import CHECKOUT_SESSION_PLACEHOLDER, parse_int

logger = logging.getLogger(__name__)

_PAID_STATUSES = {"paid", "no_payment_required"}
_CHECKOUT_LOCALES = {"de", "en", "es", "fr", "it", "ja", "ko", "nl", "pt", "zh"}


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _plain_metadata(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _with_session_placeholder(url: str, provider: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    keys = {key for key, _ in query}
    if "provider" not in keys:
        query.append(("provider", provider))
    encoded = urlencode(query)
    if "session_id" not in keys:
        encoded = f"{encoded}&session_id={CHECKOUT_SESSION_PLACEHOLDER}" if encoded else f"session_id={CHECKOUT_SESSION_PLACEHOLDER}"
    # urlencode escapes the braces Stripe needs to see verbatim.
    encoded = encoded.replace("%7BCHECKOUT_SESSION_ID%7D", CHECKOUT_SESSION_PLACEHOLDER)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, encoded, parts.fragment))


class StripePaymentProvider:
    """Stripe Checkout integration using the official SDK."""

    name = ProviderType.STRIPE
    supported_methods = ("card",)

    def __init__(self, config: PaymentConfig, *, client: Any = None) -> None:
        self._config = config
        self._stripe = client if client is not None else stripe
        self._stripe.default_http_client = stripe.RequestsClient(timeout=config.http_timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self._config.stripe_secret_key and self._config.stripe_webhook_secret)

    def list_supported_plans(self) -> List[Plan]:
        return list_plans()

    def _require_configured(self) -> str:
        if not self.is_configured():
            raise ConfigurationError(message="Stripe is not configured", detail={"provider": self.name.value})
        return str(self._config.stripe_secret_key)

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        api_key = self._require_configured()
        plan = get_plan(params.plan_id)

        metadata = {
            "account_id": params.account_id,
            "plan_id": plan.id,
            "credit_grant": str(plan.credit_grant),
            "billing_type": plan.billing_type.value,
            "provider": self.name.value,
        }
        price_id = self._config.stripe_price_id(plan.id)
        if price_id:
            line_item: Dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            price_data: Dict[str, Any] = {
                "currency": plan.currency.lower(),
                "product_data": {"name": plan.display_name, "description": plan.description},
                "unit_amount": plan.price_minor_units,
            }
            if plan.is_recurring:
                price_data["recurring"] = {"interval": "month"}
            line_item = {"price_data": price_data, "quantity": 1}

        request: Dict[str, Any] = {
            "mode": "subscription" if plan.is_recurring else "payment",
            "line_items": [line_item],
            "success_url": _with_session_placeholder(params.success_url, self.name.value),
            "cancel_url": params.cancel_url,
            "customer_email": params.account_email,
            "client_reference_id": params.account_id,
            "metadata": metadata,
            "locale": params.locale if params.locale in _CHECKOUT_LOCALES else "auto",
        }
        if plan.is_recurring:
            request["subscription_data"] = {"metadata": metadata}

        try:
            session = self._stripe.checkout.Session.create(api_key=api_key, **request)
        except stripe.InvalidRequestError as exc:
            logger.exception("Stripe rejected checkout session request")
            raise UpstreamError(message="Stripe rejected the checkout request", detail={"provider": self.name.value}) from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed")
            raise UpstreamError(message="Stripe checkout session creation failed", detail={"provider": self.name.value}) from exc

        return CheckoutSession(
            logical_id=str(_field(session, "id")),
            redirect_url=str(_field(session, "url") or ""),
            provider=self.name,
            metadata=_plain_metadata(_field(session, "metadata")) or metadata,
        )

    def verify_payment(self, logical_id: str) -> VerificationResult:
        api_key = self._require_configured()
        try:
            session = self._stripe.checkout.Session.retrieve(logical_id, api_key=api_key)
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe session lookup failed", extra={"payment_session_id": logical_id, "error": str(exc)})
            return VerificationResult.failed(logical_id, self.name, "Unknown checkout session")
        except stripe.StripeError as exc:
            raise UpstreamError(message="Stripe verification failed", detail={"provider": self.name.value}) from exc

        if _field(session, "payment_status") not in _PAID_STATUSES:
            return VerificationResult.failed(logical_id, self.name, "Payment not completed")

        metadata = _plain_metadata(_field(session, "metadata"))
        plan = find_plan(metadata.get("plan_id"))
        credit_grant = parse_int(metadata.get("credit_grant"))
        billing_type = metadata.get("billing_type")
        if plan is not None:
            credit_grant = credit_grant or plan.credit_grant
            billing_type = billing_type or plan.billing_type.value

        currency = _field(session, "currency")
        return VerificationResult(
            succeeded=True,
            logical_id=str(_field(session, "id") or logical_id),
            provider=self.name,
            account_id=metadata.get("account_id") or _field(session, "client_reference_id"),
            plan_id=metadata.get("plan_id"),
            credit_grant=credit_grant,
            billing_type=BillingType(billing_type) if billing_type else None,
            amount_minor_units=parse_int(_field(session, "amount_total")),
            currency=str(currency).upper() if currency else "USD",
        )

    def handle_callback(self, raw_payload: bytes, signature: Optional[str] = None) -> Optional[CallbackEvent]:
        if not self.is_configured() or not signature:
            logger.warning("Stripe callback rejected: missing signature or webhook secret")
            return None

        try:
            event = self._stripe.Webhook.construct_event(raw_payload, signature, self._config.stripe_webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Stripe callback signature verification failed", extra={"error": str(exc)})
            return None

        event_id = str(_field(event, "id"))
        raw_type = str(_field(event, "type"))
        obj = _field(_field(event, "data"), "object")
        event_type, logical_id, metadata = self._normalize(raw_type, obj)
        email = _field(obj, "customer_email") or _field(_field(obj, "customer_details"), "email")
        if email:
            metadata.setdefault("customer_email", str(email))
        amount = _field(obj, "amount_total") or _field(obj, "amount_paid")
        if amount is not None:
            metadata.setdefault("amount_minor_units", str(amount))
        if _field(obj, "currency"):
            metadata.setdefault("currency", str(_field(obj, "currency")).upper())

        return CallbackEvent(
            event_id=event_id,
            event_type=event_type,
            provider=self.name,
            logical_id=logical_id,
            raw_payload={"id": event_id, "type": raw_type},
            extracted_metadata=metadata,
        )

    def _normalize(self, raw_type: str, obj: Any) -> tuple[CallbackEventType, Optional[str], Dict[str, str]]:
        object_id = _field(obj, "id")
        logical_id = str(object_id) if object_id else None

        if raw_type in {"checkout.session.completed", "checkout.session.async_payment_succeeded"}:
            metadata = _plain_metadata(_field(obj, "metadata"))
            if _field(obj, "client_reference_id"):
                metadata.setdefault("account_id", str(_field(obj, "client_reference_id")))
            if _field(obj, "payment_status") not in _PAID_STATUSES:
                return CallbackEventType.IGNORED, logical_id, metadata
            return CallbackEventType.CHECKOUT_COMPLETED, logical_id, metadata

        if raw_type == "checkout.session.async_payment_failed":
            return CallbackEventType.PAYMENT_FAILED, logical_id, _plain_metadata(_field(obj, "metadata"))

        if raw_type in {"invoice.payment_succeeded", "invoice.paid"}:
            metadata = _plain_metadata(_field(_field(obj, "subscription_details"), "metadata"))
            if _field(obj, "billing_reason") != "subscription_cycle":
                # The first invoice is reconciled through checkout.session.completed.
                return CallbackEventType.IGNORED, logical_id, metadata
            return CallbackEventType.SUBSCRIPTION_RENEWED, logical_id, metadata

        if raw_type == "invoice.payment_failed":
            metadata = _plain_metadata(_field(_field(obj, "subscription_details"), "metadata"))
            return CallbackEventType.PAYMENT_FAILED, logical_id, metadata

        if raw_type == "customer.subscription.deleted":
            return CallbackEventType.SUBSCRIPTION_CANCELLED, logical_id, _plain_metadata(_field(obj, "metadata"))

        return CallbackEventType.IGNORED, logical_id, {}


__all__ = ["StripePaymentProvider"]
