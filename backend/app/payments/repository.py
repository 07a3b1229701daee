"""PostgreSQL persistence for account credit state and the payment ledger."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import AlreadyProcessed
from .models import Account, LedgerEntry, LedgerEntryKind, SubscriptionStatus

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


_ACCOUNT_COLUMNS = """
    id,
    email,
    credits,
    subscription_credits,
    subscription_status,
    subscription_plan_id,
    subscription_start_date,
    subscription_end_date
"""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _account_key(account_id: str) -> Optional[int]:
    # users.id is an integer column; anything else cannot match a row.
    value = str(account_id).strip()
    return int(value) if value.isdigit() else None


def _row_to_account(row: dict) -> Account:
    return Account(
        account_id=str(row["id"]),
        email=row.get("email"),
        credit_balance=int(row.get("credits") or 0),
        subscription_credits=int(row.get("subscription_credits") or 0),
        subscription_status=SubscriptionStatus(row.get("subscription_status") or SubscriptionStatus.NONE.value),
        subscription_plan_id=row.get("subscription_plan_id"),
        subscription_start_date=row.get("subscription_start_date"),
        subscription_end_date=row.get("subscription_end_date"),
    )


def _row_to_ledger_entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        account_id=str(row["account_id"]),
        kind=LedgerEntryKind(row["kind"]),
        credit_delta=int(row["credit_delta"]),
        source_logical_id=row["source_logical_id"],
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


class PostgresPaymentUnitOfWork:
    """Row-locking operations bound to one open transaction."""

    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def lock_account(self, account_id: str) -> Optional[Account]:
        key = _account_key(account_id)
        if key is None:
            return None
        self._cursor.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s FOR UPDATE", (key,))
        row = self._cursor.fetchone()
        return _row_to_account(row) if row else None

    def lock_account_by_email(self, email: str) -> Optional[Account]:
        self._cursor.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE LOWER(email) = LOWER(%s) ORDER BY id LIMIT 1 FOR UPDATE",
            (email,),
        )
        row = self._cursor.fetchone()
        return _row_to_account(row) if row else None

    def has_ledger_entry(self, account_id: str, source_logical_id: str) -> bool:
        self._cursor.execute(
            "SELECT 1 FROM payment_ledger WHERE account_id = %s AND source_logical_id = %s",
            (_account_key(account_id), source_logical_id),
        )
        return self._cursor.fetchone() is not None

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        try:
            self._cursor.execute(
                """
                INSERT INTO payment_ledger (account_id, kind, credit_delta, source_logical_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING account_id, kind, credit_delta, source_logical_id, metadata, created_at
                """,
                (
                    _account_key(entry.account_id),
                    entry.kind.value,
                    entry.credit_delta,
                    entry.source_logical_id,
                    psycopg2.extras.Json(entry.metadata),
                    entry.created_at,
                ),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise AlreadyProcessed(
                message="Payment has already been processed",
                detail={"session_id": entry.source_logical_id},
            ) from exc
        return _row_to_ledger_entry(self._cursor.fetchone())

    def save_account(self, account: Account) -> Account:
        self._cursor.execute(
            f"""
            UPDATE users
               SET credits = %s,
                   subscription_credits = %s,
                   subscription_status = %s,
                   subscription_plan_id = %s,
                   subscription_start_date = %s,
                   subscription_end_date = %s
             WHERE id = %s
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (
                account.credit_balance,
                account.subscription_credits,
                account.subscription_status.value,
                account.subscription_plan_id,
                account.subscription_start_date,
                account.subscription_end_date,
                _account_key(account.account_id),
            ),
        )
        row = self._cursor.fetchone()
        if row is None:
            raise LookupError(f"Account {account.account_id} disappeared during reconciliation")
        return _row_to_account(row)


class PostgresPaymentRepository:
    """Concrete repository persisting payment state in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def transaction(self) -> Iterator[PostgresPaymentUnitOfWork]:
        """One reconciliation transaction; rolled back on any exception."""

        with self._cursor() as cursor:
            yield PostgresPaymentUnitOfWork(cursor)

    def get_account(self, account_id: str) -> Optional[Account]:
        key = _account_key(account_id)
        if key is None:
            return None
        with self._cursor() as cursor:
            cursor.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s", (key,))
            row = cursor.fetchone()
        return _row_to_account(row) if row else None

    def list_ledger_entries(self, account_id: str, *, limit: int = 50) -> List[LedgerEntry]:
        key = _account_key(account_id)
        if key is None:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT account_id, kind, credit_delta, source_logical_id, metadata, created_at
                  FROM payment_ledger
                 WHERE account_id = %s
                 ORDER BY created_at DESC, id DESC
                 LIMIT %s
                """,
                (key, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_ledger_entry(row) for row in rows]


__all__ = ["PostgresPaymentRepository", "PostgresPaymentUnitOfWork", "managed_connection"]
