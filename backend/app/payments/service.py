"""Dispatch of payment operations to the selected backend."""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple, Union

from .catalog import get_plan
from .exceptions import ValidationError
from .models import (
    CallbackEvent,
    CheckoutSession,
    CheckoutSessionParams,
    Plan,
    ProviderStatus,
    ProviderType,
    VerificationResult,
)
from .providers import is_placeholder
from .selector import ProviderSelector, parse_provider_type

logger = logging.getLogger("payments")

ProviderHint = Optional[Union[str, ProviderType]]

# Clients occasionally serialise a missing hint as this literal.
_UNSET_HINTS = {"", "undefined", "null", "none"}


def resolve_verification_identifier(session_id: Optional[str], checkout_id: Optional[str]) -> str:
    """Pick the canonical identifier from the success-redirect parameters.

    ``checkout_id`` wins over ``session_id``; an unresolved redirect template
    is never accepted as an identifier.
    """

    for candidate in (checkout_id, session_id):
        if candidate and candidate.strip() and not is_placeholder(candidate):
            return candidate.strip()
    raise ValidationError(
        code="missing_session_id",
        message="No usable payment session identifier was provided",
        detail={"session_id": session_id, "checkout_id": checkout_id},
    )


def infer_provider(provider_hint: Optional[str], checkout_id: Optional[str]) -> Optional[str]:
    """Explicit hint first, then the backend implied by the redirect parameters."""

    if provider_hint and provider_hint.strip().lower() not in _UNSET_HINTS:
        return provider_hint.strip().lower()
    if checkout_id:
        return ProviderType.CREEM.value
    return None


class PaymentService:
    """Stateless facade over :class:`ProviderSelector`."""

    def __init__(self, selector: ProviderSelector) -> None:
        self._selector = selector

    @property
    def selector(self) -> ProviderSelector:
        return self._selector

    def create_checkout_session(self, params: CheckoutSessionParams, provider: ProviderHint = None) -> CheckoutSession:
        plan = get_plan(params.plan_id)
        backend = self._selector.resolve(provider)
        logger.info(
            "Creating checkout session with %s",
            backend.name.value,
            extra={"provider": backend.name.value, "plan_id": plan.id, "account_id": params.account_id},
        )
        return backend.create_checkout_session(params)

    def verify_payment(self, logical_id: str, provider: ProviderHint = None) -> VerificationResult:
        if not logical_id or is_placeholder(logical_id):
            raise ValidationError(
                code="missing_session_id",
                message="A resolved payment session identifier is required",
                detail={"session_id": logical_id},
            )
        backend = self._selector.resolve(provider)
        logger.info(
            "Verifying payment with %s",
            backend.name.value,
            extra={"provider": backend.name.value, "payment_session_id": logical_id},
        )
        return backend.verify_payment(logical_id)

    def handle_callback(
        self,
        raw_payload: bytes,
        signature: Optional[str] = None,
        provider: ProviderHint = None,
    ) -> Optional[CallbackEvent]:
        backend = self._selector.resolve(provider)
        if provider and backend.name != parse_provider_type(provider):
            # Never let another backend authenticate a callback addressed elsewhere.
            logger.warning(
                "Dropping callback for unconfigured provider %s",
                provider,
                extra={"provider": str(provider)},
            )
            return None
        logger.info(
            "Dispatching callback to %s",
            backend.name.value,
            extra={"provider": backend.name.value, "signed": bool(signature)},
        )
        return backend.handle_callback(raw_payload, signature)

    def list_plans(self, provider: ProviderHint = None) -> Tuple[ProviderType, List[Plan]]:
        """Plans offered by the selected backend, with the backend that serves them."""

        backend = self._selector.resolve(provider)
        return backend.name, backend.list_supported_plans()

    def list_available_providers(self) -> List[ProviderStatus]:
        return self._selector.list_available()

    def is_provider_available(self, provider: Union[str, ProviderType]) -> bool:
        return self._selector.is_available(provider)

    def default_verification_provider(self) -> Optional[ProviderType]:
        """First enabled provider that is actually configured, if any."""

        for status in self._selector.list_available():
            if status.is_configured:
                return status.type
        return None


__all__ = ["PaymentService", "infer_provider", "resolve_verification_identifier"]
