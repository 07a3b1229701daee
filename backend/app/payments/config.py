"""Payment configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .catalog import PLAN_CATALOG, product_config_key


@dataclass(frozen=True)
class PaymentConfig:
    """Provider selection policy and per-backend secrets."""

    default_provider: Optional[str]
    enabled_providers: Tuple[str, ...]
    app_base_url: str
    http_timeout_seconds: float
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_ids: Dict[str, str] = field(default_factory=dict)
    creem_api_key: Optional[str] = None
    creem_webhook_secret: Optional[str] = None
    creem_product_ids: Dict[str, str] = field(default_factory=dict)
    creem_test_mode: bool = True
    mock_webhook_secret: Optional[str] = None

    def stripe_price_id(self, plan_id: str) -> Optional[str]:
        return self.stripe_price_ids.get(product_config_key(plan_id))

    def creem_product_id(self, plan_id: str) -> Optional[str]:
        return self.creem_product_ids.get(product_config_key(plan_id))


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    items = (item.strip().lower() for item in value.split(","))
    return tuple(item for item in items if item)


def _plan_mapping(env_mapping: Mapping[str, str], prefix: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for plan_id in PLAN_CATALOG:
        key = product_config_key(plan_id)
        value = (env_mapping.get(f"{prefix}{key}") or "").strip()
        if value:
            mapping[key] = value
    return mapping


def load_payment_config(env: Optional[Mapping[str, str]] = None) -> PaymentConfig:
    """Load :class:`PaymentConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    default_provider = (env_mapping.get("DEFAULT_PAYMENT_PROVIDER") or "").strip().lower() or None
    enabled_providers = _split_list(env_mapping.get("ENABLED_PAYMENT_PROVIDERS")) or ("mock",)

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:3000")
    http_timeout_seconds = max(0.1, _to_float(env_mapping.get("PAYMENT_HTTP_TIMEOUT"), default=10.0))

    return PaymentConfig(
        default_provider=default_provider,
        enabled_providers=enabled_providers,
        app_base_url=app_base_url.rstrip("/"),
        http_timeout_seconds=http_timeout_seconds,
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_price_ids=_plan_mapping(env_mapping, "STRIPE_PRICE_ID_"),
        creem_api_key=env_mapping.get("CREEM_API_KEY") or None,
        creem_webhook_secret=env_mapping.get("CREEM_WEBHOOK_SECRET") or None,
        creem_product_ids=_plan_mapping(env_mapping, "CREEM_PRODUCT_ID_"),
        creem_test_mode=_to_bool(env_mapping.get("CREEM_TEST_MODE"), default=True),
        mock_webhook_secret=env_mapping.get("MOCK_WEBHOOK_SECRET") or None,
    )


__all__ = ["PaymentConfig", "load_payment_config"]
