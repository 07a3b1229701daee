"""API schemas for payment endpoints."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..payments import (
    BillingType,
    CheckoutSession,
    Plan,
    ProviderStatus,
    ProviderType,
    ReconciliationOutcome,
    VerificationResult,
)


class PlanResponse(BaseModel):
    id: str
    name: str
    price: int = Field(description="Price in minor currency units")
    credits: int
    description: str = ""
    billing_type: BillingType = Field(alias="billingType")
    currency: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.display_name,
            price=plan.price_minor_units,
            credits=plan.credit_grant,
            description=plan.description,
            billing_type=plan.billing_type,
            currency=plan.currency,
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]
    provider: ProviderType

    model_config = ConfigDict(populate_by_name=True)


class ProviderStatusResponse(BaseModel):
    type: ProviderType
    is_configured: bool = Field(alias="isConfigured")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, status: ProviderStatus) -> "ProviderStatusResponse":
        return cls(type=status.type, is_configured=status.is_configured)


class CheckoutSessionRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    locale: str = Field(default="en", min_length=2, max_length=10, pattern=r"^[A-Za-z]{2}([-_][A-Za-z0-9]{2,4})?$")
    payment_provider: Optional[str] = Field(alias="paymentProvider", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str
    provider: ProviderType

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(session_id=session.logical_id, url=session.redirect_url, provider=session.provider)


class VerifiedSession(BaseModel):
    id: str
    amount_total: Optional[int] = Field(alias="amountTotal", default=None)
    currency: Optional[str] = None
    payment_status: str = Field(alias="paymentStatus")

    model_config = ConfigDict(populate_by_name=True)


class VerifyPaymentResponse(BaseModel):
    success: bool
    session: VerifiedSession
    outcome: ReconciliationOutcome

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_verification(cls, result: VerificationResult, outcome: ReconciliationOutcome) -> "VerifyPaymentResponse":
        return cls(
            success=True,
            session=VerifiedSession(
                id=result.logical_id,
                amount_total=result.amount_minor_units,
                currency=result.currency,
                payment_status="paid",
            ),
            outcome=outcome,
        )


class CallbackAcknowledgement(BaseModel):
    received: bool = True
