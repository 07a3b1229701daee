"""Payments domain package: plans, backends, selection and reconciliation."""

from .catalog import PLAN_CATALOG, find_plan, get_plan, list_plans
from .config import PaymentConfig, load_payment_config
from .exceptions import (
    AlreadyProcessed,
    AlreadySubscribedError,
    AuthenticationError,
    BusinessRuleViolation,
    ConfigurationError,
    OwnershipMismatchError,
    PaymentError,
    ProviderNotEnabledError,
    UpstreamError,
    ValidationError,
)
from .models import (
    Account,
    BillingType,
    CallbackEvent,
    CallbackEventType,
    CheckoutSession,
    CheckoutSessionParams,
    LedgerEntry,
    LedgerEntryKind,
    Plan,
    ProviderStatus,
    ProviderType,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionStatus,
    VerificationResult,
)
from .providers import PaymentProvider
from .reconciliation import PaymentRepository, PaymentUnitOfWork, ReconciliationEngine
from .selector import ProviderSelector
from .service import PaymentService, infer_provider, resolve_verification_identifier

__all__ = [
    "Account",
    "AlreadyProcessed",
    "AlreadySubscribedError",
    "AuthenticationError",
    "BillingType",
    "BusinessRuleViolation",
    "CallbackEvent",
    "CallbackEventType",
    "CheckoutSession",
    "CheckoutSessionParams",
    "ConfigurationError",
    "LedgerEntry",
    "LedgerEntryKind",
    "OwnershipMismatchError",
    "PLAN_CATALOG",
    "PaymentConfig",
    "PaymentError",
    "PaymentProvider",
    "PaymentRepository",
    "PaymentService",
    "PaymentUnitOfWork",
    "Plan",
    "ProviderNotEnabledError",
    "ProviderSelector",
    "ProviderStatus",
    "ProviderType",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SubscriptionStatus",
    "UpstreamError",
    "ValidationError",
    "VerificationResult",
    "find_plan",
    "get_plan",
    "infer_provider",
    "list_plans",
    "load_payment_config",
    "resolve_verification_identifier",
]
