"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None


def configure(*, get_conn: Callable[[], Any]) -> None:
    """Register the connection factory used by the payment repository."""

    global _get_conn
    _get_conn = get_conn


def get_conn() -> Any:
    if _get_conn is None:
        raise RuntimeError("Application context has not been configured yet: get_conn")
    return _get_conn()
