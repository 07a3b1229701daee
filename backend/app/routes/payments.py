"""API routes exposing checkout, verification and payment callbacks."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request, status

from ..payments import (
    AlreadySubscribedError,
    CheckoutSessionParams,
    PaymentError,
    ValidationError,
    get_plan,
    infer_provider,
    resolve_verification_identifier,
)
from ..payments.providers import CHECKOUT_SESSION_PLACEHOLDER
from ..schemas.payments import (
    CallbackAcknowledgement,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanListResponse,
    PlanResponse,
    ProviderStatusResponse,
    VerifyPaymentResponse,
)
from ..services.payments import get_payment_config, get_payment_service, get_reconciliation_engine

logger = logging.getLogger("payments")


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

_SIGNATURE_HEADERS = ("stripe-signature", "creem-signature", "x-creem-signature", "x-mock-signature")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


def _callback_signature(headers: Mapping[str, str]) -> Optional[str]:
    for name in _SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/plans", response_model=PlanListResponse)
def list_plans(provider: Optional[str] = Query(None)) -> PlanListResponse:
    service = get_payment_service()
    try:
        backend_name, plans = service.list_plans(provider)
    except PaymentError as exc:
        raise exc.to_http_exception() from exc
    return PlanListResponse(plans=[PlanResponse.from_plan(plan) for plan in plans], provider=backend_name)


@router.get("/providers", response_model=List[ProviderStatusResponse])
def list_providers() -> List[ProviderStatusResponse]:
    service = get_payment_service()
    return [ProviderStatusResponse.from_status(item) for item in service.list_available_providers()]


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutSessionResponse:
    service = get_payment_service()
    config = get_payment_config()
    user_id = str(current_user.id)
    email = getattr(current_user, "email", None)

    try:
        plan = get_plan(payload.plan_id)
        if not email:
            raise ValidationError(code="missing_email", message="An email address is required to check out")

        provider = payload.payment_provider or None
        if provider and not service.is_provider_available(provider):
            raise ValidationError(
                code="provider_unavailable",
                message=f"Payment provider {provider} is not available",
                detail={"provider": provider},
            )

        if plan.is_recurring:
            account = get_reconciliation_engine().repository.get_account(user_id)
            if account is not None and account.has_active_subscription(datetime.now(timezone.utc)):
                raise AlreadySubscribedError(
                    message="You already have an active subscription",
                    detail={"plan_id": plan.id},
                )

        base_url = f"{config.app_base_url}/{payload.locale}"
        params = CheckoutSessionParams(
            account_id=user_id,
            account_email=email,
            plan_id=plan.id,
            locale=payload.locale,
            success_url=f"{base_url}/payment/success?session_id={CHECKOUT_SESSION_PLACEHOLDER}",
            cancel_url=f"{base_url}?canceled=true",
        )
        session = service.create_checkout_session(params, provider)
    except PaymentError as exc:
        raise exc.to_http_exception() from exc

    return CheckoutSessionResponse.from_session(session)


@router.get("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    session_id: Optional[str] = Query(None),
    checkout_id: Optional[str] = Query(None),
    provider: Optional[str] = Query(None),
    *,
    current_user=Depends(_get_current_user),
) -> VerifyPaymentResponse:
    service = get_payment_service()
    try:
        logical_id = resolve_verification_identifier(session_id, checkout_id)
        provider_name = infer_provider(provider, checkout_id) or service.default_verification_provider()
        result = service.verify_payment(logical_id, provider_name)
        if not result.succeeded:
            raise ValidationError(
                code="payment_not_completed",
                message=result.failure_reason or "Payment verification failed",
                detail={"session_id": logical_id},
            )
        reconciliation = get_reconciliation_engine().reconcile_verification(
            result,
            expected_account_id=str(current_user.id),
        )
    except PaymentError as exc:
        raise exc.to_http_exception() from exc

    return VerifyPaymentResponse.from_verification(result, reconciliation.outcome)


@router.post("/callback/{provider}", response_model=CallbackAcknowledgement)
async def receive_callback(provider: str, request: Request) -> CallbackAcknowledgement:
    raw_payload = await request.body()
    try:
        json.loads(raw_payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid callback payload") from exc

    service = get_payment_service()
    try:
        event = service.handle_callback(raw_payload, _callback_signature(request.headers), provider)
    except PaymentError as exc:
        logger.warning("Callback for %s not dispatched: %s", provider, exc.code)
        return CallbackAcknowledgement()

    if event is None:
        logger.warning("Discarded unauthenticated or unrecognised %s callback", provider)
        return CallbackAcknowledgement()

    try:
        result = get_reconciliation_engine().reconcile_callback(event)
    except PaymentError as exc:
        logger.warning(
            "Callback %s from %s rejected: %s",
            event.event_id,
            provider,
            exc.code,
            extra={"event_type": event.event_type.value},
        )
        return CallbackAcknowledgement()

    logger.info(
        "Callback %s from %s reconciled: %s",
        event.event_id,
        provider,
        result.outcome.value,
    )
    return CallbackAcknowledgement()
