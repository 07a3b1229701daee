"""Domain models for the payments system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingType(str, Enum):
    """Whether a plan grants credits once or recurs monthly."""

    RECURRING = "recurring"
    ONE_TIME = "one_time"


class ProviderType(str, Enum):
    """Closed set of payment backends the application can route to."""

    STRIPE = "stripe"
    CREEM = "creem"
    MOCK = "mock"


class SubscriptionStatus(str, Enum):
    """Lifecycle state of an account's subscription."""

    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class CallbackEventType(str, Enum):
    """Normalized callback event types the reconciliation engine reacts to."""

    CHECKOUT_COMPLETED = "checkout.completed"
    PAYMENT_COMPLETED = "payment.completed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    PAYMENT_FAILED = "payment.failed"
    IGNORED = "ignored"


class LedgerEntryKind(str, Enum):
    """Kinds of entries appended to the payment ledger."""

    CREDIT_ADD = "credit_add"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class ReconciliationOutcome(str, Enum):
    """Result of applying a payment event to account state."""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"


class Plan(BaseModel):
    """A purchasable plan and the credits it grants."""

    id: str
    display_name: str
    price_minor_units: int = Field(ge=0)
    credit_grant: int
    description: str = ""
    billing_type: BillingType
    currency: str = Field(default="USD", min_length=3, max_length=3)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("credit_grant")
    @classmethod
    def _positive_grant(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("credit_grant must be > 0")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_recurring(self) -> bool:
        return self.billing_type == BillingType.RECURRING


class CheckoutSessionParams(BaseModel):
    """Inputs required by every backend to open a checkout session."""

    account_id: str
    account_email: str
    plan_id: str
    locale: str = "en"
    success_url: str
    cancel_url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a checkout session creation request."""

    logical_id: str = Field(description="Backend-issued identifier used for later verification")
    redirect_url: str
    provider: ProviderType
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class VerificationResult(BaseModel):
    """Outcome of actively verifying a checkout session with its backend."""

    succeeded: bool
    logical_id: str
    provider: ProviderType
    account_id: Optional[str] = None
    plan_id: Optional[str] = None
    credit_grant: Optional[int] = None
    billing_type: Optional[BillingType] = None
    amount_minor_units: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def failed(cls, logical_id: str, provider: ProviderType, reason: str) -> "VerificationResult":
        return cls(succeeded=False, logical_id=logical_id, provider=provider, failure_reason=reason)


class CallbackEvent(BaseModel):
    """Authenticated, normalized asynchronous notification from a backend."""

    event_id: str
    event_type: CallbackEventType
    provider: ProviderType
    logical_id: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    extracted_metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Account(BaseModel):
    """Credit and subscription state of a user account."""

    account_id: str
    email: Optional[str] = None
    credit_balance: int = 0
    subscription_credits: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_plan_id: Optional[str] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def has_active_subscription(self, now: datetime) -> bool:
        """Return ``True`` for an active subscription that has not yet lapsed."""
        return (
            self.subscription_status == SubscriptionStatus.ACTIVE
            and self.subscription_end_date is not None
            and self.subscription_end_date > now
        )


class LedgerEntry(BaseModel):
    """Append-only record of one credited or business-relevant payment event."""

    account_id: str
    kind: LedgerEntryKind
    credit_delta: int
    source_logical_id: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def idempotency_key(self) -> tuple[str, str]:
        return (self.account_id, self.source_logical_id)


class ReconciliationResult(BaseModel):
    """Outcome of a reconciliation attempt."""

    outcome: ReconciliationOutcome
    account_id: Optional[str] = None
    source_logical_id: Optional[str] = None
    ledger_entry: Optional[LedgerEntry] = None
    account: Optional[Account] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderStatus(BaseModel):
    """Enabled provider together with its live configuration status."""

    type: ProviderType
    is_configured: bool

    model_config = ConfigDict(populate_by_name=True, frozen=True)
