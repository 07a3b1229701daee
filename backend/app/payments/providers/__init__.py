"""Payment backend implementations."""

from .base import CHECKOUT_SESSION_PLACEHOLDER, PaymentProvider, compute_signature, is_placeholder, signature_matches
from .creem import CreemPaymentProvider
from .simulated import MOCK_SESSION_PREFIX, MockPaymentProvider
from .stripe import StripePaymentProvider

__all__ = [
    "CHECKOUT_SESSION_PLACEHOLDER",
    "CreemPaymentProvider",
    "MOCK_SESSION_PREFIX",
    "MockPaymentProvider",
    "PaymentProvider",
    "StripePaymentProvider",
    "compute_signature",
    "is_placeholder",
    "signature_matches",
]
