"""Shared fixtures for the payments test-suite."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

import pytest

from backend.app.payments import (
    Account,
    AlreadyProcessed,
    LedgerEntry,
    PaymentConfig,
    ReconciliationEngine,
    load_payment_config,
)

FIXED_NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


class _InMemoryUnitOfWork:
    """Stages writes until the owning transaction exits cleanly."""

    def __init__(self, repository: "InMemoryPaymentRepository") -> None:
        self._repository = repository
        self.accounts: Dict[str, Account] = {}
        self.ledger: Dict[Tuple[str, str], LedgerEntry] = {}

    def lock_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id) or self._repository.accounts.get(account_id)

    def lock_account_by_email(self, email: str) -> Optional[Account]:
        for account in self._repository.accounts.values():
            if account.email and account.email.lower() == email.lower():
                return self.lock_account(account.account_id)
        return None

    def has_ledger_entry(self, account_id: str, source_logical_id: str) -> bool:
        if self._repository.hide_existing_entries:
            return False
        key = (account_id, source_logical_id)
        return key in self.ledger or key in self._repository.ledger

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        key = entry.idempotency_key
        if key in self.ledger or key in self._repository.ledger:
            raise AlreadyProcessed(message="duplicate ledger entry", detail={"session_id": entry.source_logical_id})
        self.ledger[key] = entry
        return entry

    def save_account(self, account: Account) -> Account:
        self.accounts[account.account_id] = account
        return account


class InMemoryPaymentRepository:
    """Serializes transactions and enforces the ledger's unique key."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.ledger: Dict[Tuple[str, str], LedgerEntry] = {}
        self.hide_existing_entries = False
        self.commits = 0
        self.rollbacks = 0
        self._lock = threading.Lock()

    def add_account(self, account: Account) -> Account:
        self.accounts[account.account_id] = account
        return account

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryUnitOfWork]:
        with self._lock:
            uow = _InMemoryUnitOfWork(self)
            try:
                yield uow
            except Exception:
                self.rollbacks += 1
                raise
            self.accounts.update(uow.accounts)
            self.ledger.update(uow.ledger)
            self.commits += 1

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def entries_for(self, account_id: str) -> List[LedgerEntry]:
        return [entry for (owner, _), entry in self.ledger.items() if owner == account_id]


@pytest.fixture
def repository() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def engine(repository: InMemoryPaymentRepository) -> ReconciliationEngine:
    return ReconciliationEngine(repository=repository, clock=lambda: FIXED_NOW)


@pytest.fixture
def make_config():
    def _make(**env: str) -> PaymentConfig:
        return load_payment_config({key: str(value) for key, value in env.items()})

    return _make


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
