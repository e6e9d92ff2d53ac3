"""Core order and payment logic."""
from .checkout_events import CheckoutEventHandlers
from .checkout_session import CheckoutSessionGateway, CheckoutSessionResult
from .identity import Authenticated, AuthResult, Guest, IdentityResolver, Invalid
from .order_service import OrderService
from .payment_verifier import PaymentVerifier, VerificationOutcome, VerificationResult
from .reconciliation import SessionReconciler

__all__ = [
    "AuthResult",
    "Authenticated",
    "CheckoutEventHandlers",
    "CheckoutSessionGateway",
    "CheckoutSessionResult",
    "Guest",
    "IdentityResolver",
    "Invalid",
    "OrderService",
    "PaymentVerifier",
    "SessionReconciler",
    "VerificationOutcome",
    "VerificationResult",
]
