"""Application wiring for the payments service and reconciliation engine."""
from __future__ import annotations

from functools import lru_cache

from ..payments import PaymentConfig, PaymentService, ProviderSelector, ReconciliationEngine, load_payment_config
from ..payments.repository import PostgresPaymentRepository


@lru_cache(maxsize=1)
def get_payment_config() -> PaymentConfig:
    return load_payment_config()


@lru_cache(maxsize=1)
def get_payment_service() -> PaymentService:
    selector = ProviderSelector(get_payment_config())
    return PaymentService(selector)


@lru_cache(maxsize=1)
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(repository=PostgresPaymentRepository())


def reset_payment_wiring() -> None:
    """Drop cached wiring so configuration changes take effect."""

    if get_payment_service.cache_info().currsize:
        get_payment_service().selector.clear_cache()
    get_payment_service.cache_clear()
    get_reconciliation_engine.cache_clear()
    get_payment_config.cache_clear()


__all__ = ["get_payment_config", "get_payment_service", "get_reconciliation_engine", "reset_payment_wiring"]
