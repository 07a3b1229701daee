"""Runtime selection of the payment backend."""
from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .config import PaymentConfig
from .exceptions import ProviderNotEnabledError, ValidationError
from .models import ProviderStatus, ProviderType
from .providers import CreemPaymentProvider, MockPaymentProvider, PaymentProvider, StripePaymentProvider

logger = logging.getLogger("payments")

ProviderFactory = Callable[[PaymentConfig], PaymentProvider]

DEFAULT_FACTORIES: Mapping[ProviderType, ProviderFactory] = {
    ProviderType.STRIPE: StripePaymentProvider,
    ProviderType.CREEM: CreemPaymentProvider,
    ProviderType.MOCK: MockPaymentProvider,
}


def parse_provider_type(value: Union[str, ProviderType]) -> ProviderType:
    """Map a provider name onto :class:`ProviderType`, rejecting unknown names."""

    if isinstance(value, ProviderType):
        return value
    try:
        return ProviderType(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            code="unknown_provider",
            message=f"Unknown payment provider: {value}",
            detail={"provider": value},
        ) from exc


def _known_types(names: Sequence[str]) -> List[ProviderType]:
    known: List[ProviderType] = []
    for name in names or ():
        try:
            known.append(ProviderType(name))
        except ValueError:
            logger.warning("Ignoring unknown payment provider %s in configuration", name)
    return known


class ProviderSelector:
    """Resolve provider names to cached, configured backend instances.

    Only configured backends are cached. A backend that reports itself as
    unconfigured is replaced by the simulated backend, one level deep.
    """

    def __init__(
        self,
        config: PaymentConfig,
        factories: Optional[Mapping[ProviderType, ProviderFactory]] = None,
    ) -> None:
        self._config = config
        self._factories: Dict[ProviderType, ProviderFactory] = dict(DEFAULT_FACTORIES)
        if factories:
            self._factories.update(factories)
        self._cache: Dict[ProviderType, PaymentProvider] = {}
        self._lock = Lock()

    @property
    def config(self) -> PaymentConfig:
        return self._config

    def enabled_types(self) -> List[ProviderType]:
        return _known_types(self._config.enabled_providers)

    def _target_type(self, requested: Optional[Union[str, ProviderType]]) -> ProviderType:
        if requested:
            return parse_provider_type(requested)

        enabled = self.enabled_types()
        default = self._config.default_provider
        if default:
            try:
                default_type = ProviderType(default)
            except ValueError:
                logger.warning("Configured default payment provider %s is unknown", default)
            else:
                if default_type in enabled:
                    return default_type
                logger.warning(
                    "Default payment provider %s is not enabled, using the first enabled provider",
                    default,
                )
        if enabled:
            return enabled[0]
        return ProviderType.MOCK

    def _instantiate(self, provider_type: ProviderType) -> PaymentProvider:
        with self._lock:
            cached = self._cache.get(provider_type)
        if cached is not None:
            return cached
        return self._factories[provider_type](self._config)

    def _remember(self, provider_type: ProviderType, provider: PaymentProvider) -> PaymentProvider:
        with self._lock:
            # First writer wins when two requests instantiate concurrently.
            return self._cache.setdefault(provider_type, provider)

    def resolve(self, requested: Optional[Union[str, ProviderType]] = None) -> PaymentProvider:
        """Return the backend for ``requested`` or for the configured default."""

        target = self._target_type(requested)
        if target not in self.enabled_types():
            raise ProviderNotEnabledError(
                message=f"Payment provider {target.value} is not enabled",
                detail={"provider": target.value},
            )
        return self._resolve_enabled(target, allow_fallback=True)

    def _resolve_enabled(self, target: ProviderType, *, allow_fallback: bool) -> PaymentProvider:
        provider = self._instantiate(target)
        if provider.is_configured():
            return self._remember(target, provider)

        if not allow_fallback or target == ProviderType.MOCK:
            return provider
        logger.warning(
            "Payment provider %s is not configured, falling back to mock",
            target.value,
            extra={"provider": target.value},
        )
        return self._resolve_enabled(ProviderType.MOCK, allow_fallback=False)

    def is_available(self, provider: Union[str, ProviderType]) -> bool:
        """Report whether exactly ``provider`` is enabled and configured."""

        try:
            target = parse_provider_type(provider)
        except ValidationError:
            return False
        if target not in self.enabled_types():
            return False
        return self._resolve_enabled(target, allow_fallback=False).is_configured()

    def list_available(self) -> List[ProviderStatus]:
        statuses: List[ProviderStatus] = []
        for provider_type in self.enabled_types():
            provider = self._resolve_enabled(provider_type, allow_fallback=False)
            statuses.append(ProviderStatus(type=provider_type, is_configured=provider.is_configured()))
        return statuses

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


__all__ = ["DEFAULT_FACTORIES", "ProviderSelector", "parse_provider_type"]
