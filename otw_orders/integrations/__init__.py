"""External integrations for checkout and payment processing."""
from .stripe_gateway import (
    CheckoutSession,
    CircuitBreaker,
    GatewayErrorType,
    SessionState,
    StripeGateway,
    StripeGatewayError,
)
from .webhook_handler import WebhookHandler, WebhookProcessingError, WebhookSignatureError

__all__ = [
    "CheckoutSession",
    "CircuitBreaker",
    "GatewayErrorType",
    "SessionState",
    "StripeGateway",
    "StripeGatewayError",
    "WebhookHandler",
    "WebhookProcessingError",
    "WebhookSignatureError",
]
