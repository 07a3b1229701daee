"""Exactly-once application of verified payments to account state."""
from __future__ import annotations

import calendar
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from .catalog import find_plan
from .exceptions import AlreadyProcessed, AlreadySubscribedError, OwnershipMismatchError, ValidationError
from .models import (
    Account,
    BillingType,
    CallbackEvent,
    CallbackEventType,
    LedgerEntry,
    LedgerEntryKind,
    ProviderType,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionStatus,
    VerificationResult,
)
from .providers import is_placeholder
from .providers.base import parse_int

logger = logging.getLogger("payments")


class PaymentUnitOfWork(Protocol):
    """Operations available inside one reconciliation transaction."""

    def lock_account(self, account_id: str) -> Optional[Account]:
        """Load an account and hold a write lock on it until the transaction ends."""

    def lock_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def has_ledger_entry(self, account_id: str, source_logical_id: str) -> bool:
        ...

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Append ``entry``, raising :class:`AlreadyProcessed` on a duplicate key."""

    def save_account(self, account: Account) -> Account:
        ...


class PaymentRepository(Protocol):
    """Durable account and ledger storage."""

    def transaction(self) -> AbstractContextManager[PaymentUnitOfWork]:
        """Commit on normal exit, roll back when an exception escapes."""

    def get_account(self, account_id: str) -> Optional[Account]:
        ...


class PaymentAction(str, Enum):
    """What a normalized payment event asks the engine to do."""

    CHECKOUT = "checkout"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    FAILURE = "failure"


_CALLBACK_ACTIONS: Dict[CallbackEventType, PaymentAction] = {
    CallbackEventType.CHECKOUT_COMPLETED: PaymentAction.CHECKOUT,
    CallbackEventType.PAYMENT_COMPLETED: PaymentAction.CHECKOUT,
    CallbackEventType.SUBSCRIPTION_RENEWED: PaymentAction.RENEWAL,
    CallbackEventType.SUBSCRIPTION_CANCELLED: PaymentAction.CANCELLATION,
    CallbackEventType.PAYMENT_FAILED: PaymentAction.FAILURE,
}


@dataclass(frozen=True)
class PaymentEvent:
    """Normalized input shared by the verification and callback paths."""

    action: PaymentAction
    provider: ProviderType
    source_logical_id: Optional[str]
    account_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan_id: Optional[str] = None
    credit_grant: Optional[int] = None
    billing_type: Optional[BillingType] = None
    metadata: Dict[str, str] = field(default_factory=dict)


# Only a fresh activation can revive these.
_NOT_RENEWABLE = frozenset({SubscriptionStatus.NONE, SubscriptionStatus.CANCELLED})


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""

    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _billing_type(value: Optional[str]) -> Optional[BillingType]:
    if not value:
        return None
    try:
        return BillingType(value)
    except ValueError:
        return None


@dataclass
class ReconciliationEngine:
    """Apply payment events to accounts and the ledger exactly once."""

    repository: PaymentRepository
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def reconcile_verification(
        self,
        result: VerificationResult,
        *,
        expected_account_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """Credit a payment confirmed by active verification."""

        if not result.succeeded:
            raise ValidationError(
                code="payment_not_completed",
                message=result.failure_reason or "Payment verification failed",
                detail={"session_id": result.logical_id},
            )
        if not result.account_id:
            raise ValidationError(
                code="missing_account",
                message="Payment is not associated with an account",
                detail={"session_id": result.logical_id},
            )
        if expected_account_id is not None and str(result.account_id) != str(expected_account_id):
            logger.warning(
                "Verification ownership mismatch for session %s",
                result.logical_id,
                extra={"payment_account_id": result.account_id, "caller_account_id": expected_account_id},
            )
            raise OwnershipMismatchError(
                message="Payment does not belong to the authenticated user",
                detail={"session_id": result.logical_id},
            )

        return self._apply(
            PaymentEvent(
                action=PaymentAction.CHECKOUT,
                provider=result.provider,
                source_logical_id=result.logical_id,
                account_id=result.account_id,
                plan_id=result.plan_id,
                credit_grant=result.credit_grant,
                billing_type=result.billing_type,
                metadata={"provider": result.provider.value, "path": "verification"},
            )
        )

    def reconcile_callback(self, event: CallbackEvent) -> ReconciliationResult:
        """Apply an authenticated, normalized backend notification."""

        action = _CALLBACK_ACTIONS.get(event.event_type)
        if action is None:
            logger.info(
                "Ignoring %s callback event %s",
                event.provider.value,
                event.event_id,
                extra={"provider": event.provider.value},
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED, source_logical_id=event.logical_id)

        metadata = event.extracted_metadata
        source_logical_id = event.logical_id
        if action == PaymentAction.CANCELLATION and not source_logical_id:
            source_logical_id = event.event_id

        return self._apply(
            PaymentEvent(
                action=action,
                provider=event.provider,
                source_logical_id=source_logical_id,
                account_id=metadata.get("account_id"),
                customer_email=metadata.get("customer_email"),
                plan_id=metadata.get("plan_id"),
                credit_grant=parse_int(metadata.get("credit_grant")),
                billing_type=_billing_type(metadata.get("billing_type")),
                metadata={"provider": event.provider.value, "path": "callback", "event_id": event.event_id},
            )
        )

    def _apply(self, event: PaymentEvent) -> ReconciliationResult:
        if event.action != PaymentAction.FAILURE:
            if not event.source_logical_id or is_placeholder(event.source_logical_id):
                raise ValidationError(
                    code="missing_session_id",
                    message="A resolved payment identifier is required for reconciliation",
                    detail={"session_id": event.source_logical_id},
                )
        if not event.account_id and not event.customer_email:
            raise ValidationError(
                code="missing_account",
                message="Payment event does not identify an account",
                detail={"session_id": event.source_logical_id},
            )

        try:
            with self.repository.transaction() as uow:
                account = self._lock_account(uow, event)
                if event.action == PaymentAction.FAILURE:
                    return self._mark_past_due(uow, account, event)
                if event.action == PaymentAction.RENEWAL and account.subscription_status in _NOT_RENEWABLE:
                    return self._skip_renewal(account, event)

                if uow.has_ledger_entry(account.account_id, str(event.source_logical_id)):
                    raise AlreadyProcessed(
                        message="Payment has already been processed",
                        detail={"session_id": event.source_logical_id},
                    )

                updated, entry = self._plan_change(account, event)
                stored_entry = uow.insert_ledger_entry(entry)
                stored_account = uow.save_account(updated)
        except AlreadyProcessed:
            logger.info(
                "Payment %s already reconciled",
                event.source_logical_id,
                extra={"provider": event.provider.value, "payment_account_id": event.account_id},
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PROCESSED,
                account_id=event.account_id,
                source_logical_id=event.source_logical_id,
            )

        logger.info(
            "Applied %s ledger entry for account %s",
            stored_entry.kind.value,
            stored_account.account_id,
            extra={
                "provider": event.provider.value,
                "payment_session_id": stored_entry.source_logical_id,
                "credit_delta": stored_entry.credit_delta,
            },
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            account_id=stored_account.account_id,
            source_logical_id=stored_entry.source_logical_id,
            ledger_entry=stored_entry,
            account=stored_account,
        )

    def _lock_account(self, uow: PaymentUnitOfWork, event: PaymentEvent) -> Account:
        account: Optional[Account] = None
        if event.account_id:
            account = uow.lock_account(event.account_id)
        elif event.customer_email:
            account = uow.lock_account_by_email(event.customer_email)
        if account is None:
            raise ValidationError(
                code="unknown_account",
                message="Payment references an unknown account",
                detail={"account_id": event.account_id, "session_id": event.source_logical_id},
            )
        return account

    def _mark_past_due(self, uow: PaymentUnitOfWork, account: Account, event: PaymentEvent) -> ReconciliationResult:
        if account.subscription_status != SubscriptionStatus.ACTIVE:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                account_id=account.account_id,
                source_logical_id=event.source_logical_id,
                account=account,
            )
        stored = uow.save_account(account.model_copy(update={"subscription_status": SubscriptionStatus.PAST_DUE}))
        logger.warning(
            "Subscription payment failed for account %s",
            account.account_id,
            extra={"provider": event.provider.value},
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            account_id=stored.account_id,
            source_logical_id=event.source_logical_id,
            account=stored,
        )

    def _skip_renewal(self, account: Account, event: PaymentEvent) -> ReconciliationResult:
        logger.warning(
            "Ignoring renewal %s for %s subscription of account %s",
            event.source_logical_id,
            account.subscription_status.value,
            account.account_id,
            extra={"provider": event.provider.value},
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.IGNORED,
            account_id=account.account_id,
            source_logical_id=event.source_logical_id,
            account=account,
        )

    def _plan_change(self, account: Account, event: PaymentEvent) -> tuple[Account, LedgerEntry]:
        now = self._now()
        source_logical_id = str(event.source_logical_id)

        if event.action == PaymentAction.CANCELLATION:
            updated = account.model_copy(
                update={
                    "subscription_credits": 0,
                    "subscription_status": SubscriptionStatus.CANCELLED,
                    "subscription_end_date": now,
                }
            )
            entry = self._entry(account, LedgerEntryKind.SUBSCRIPTION_EXPIRED, 0, source_logical_id, event, now)
            return updated, entry

        plan_id = event.plan_id
        if event.action == PaymentAction.RENEWAL:
            plan_id = plan_id or account.subscription_plan_id
        plan = find_plan(plan_id)
        # The catalog is authoritative; payload values only describe unknown plans.
        credit_grant = plan.credit_grant if plan else event.credit_grant
        billing_type = plan.billing_type if plan else event.billing_type
        if event.action == PaymentAction.RENEWAL:
            billing_type = BillingType.RECURRING
        if not plan_id or not credit_grant or billing_type is None:
            raise ValidationError(
                code="unknown_plan",
                message="Payment does not identify a known plan",
                detail={"plan_id": plan_id, "session_id": source_logical_id},
            )

        if billing_type == BillingType.ONE_TIME:
            updated = account.model_copy(update={"credit_balance": account.credit_balance + credit_grant})
            entry = self._entry(account, LedgerEntryKind.CREDIT_ADD, credit_grant, source_logical_id, event, now, plan_id)
            return updated, entry

        if event.action == PaymentAction.CHECKOUT and account.has_active_subscription(now):
            logger.warning(
                "Rejected second subscription for account %s",
                account.account_id,
                extra={"provider": event.provider.value, "payment_session_id": source_logical_id},
            )
            raise AlreadySubscribedError(
                message="Account already has an active subscription",
                detail={"account_id": account.account_id, "plan_id": plan_id},
            )

        kind = (
            LedgerEntryKind.SUBSCRIPTION_RENEWAL
            if event.action == PaymentAction.RENEWAL
            else LedgerEntryKind.SUBSCRIPTION_ACTIVATED
        )
        updated = account.model_copy(
            update={
                "subscription_credits": credit_grant,
                "subscription_status": SubscriptionStatus.ACTIVE,
                "subscription_plan_id": plan_id,
                "subscription_start_date": now,
                "subscription_end_date": add_one_month(now),
            }
        )
        entry = self._entry(account, kind, credit_grant, source_logical_id, event, now, plan_id)
        return updated, entry

    def _entry(
        self,
        account: Account,
        kind: LedgerEntryKind,
        credit_delta: int,
        source_logical_id: str,
        event: PaymentEvent,
        now: datetime,
        plan_id: Optional[str] = None,
    ) -> LedgerEntry:
        metadata = dict(event.metadata)
        if plan_id:
            metadata["plan_id"] = plan_id
        return LedgerEntry(
            account_id=account.account_id,
            kind=kind,
            credit_delta=credit_delta,
            source_logical_id=source_logical_id,
            metadata=metadata,
            created_at=now,
        )


__all__ = [
    "PaymentAction",
    "PaymentEvent",
    "PaymentRepository",
    "PaymentUnitOfWork",
    "ReconciliationEngine",
    "add_one_month",
]
