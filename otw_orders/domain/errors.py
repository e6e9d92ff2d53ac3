"""
Error taxonomy for order and payment operations.

Every error carries the HTTP status it maps to and a message that is safe
to show to the client. Handlers log the full detail server-side.
"""
from typing import Optional


class OrderError(Exception):
    """Base exception for order service errors."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class OrderValidationError(OrderError):
    """Raised when client input is invalid. Nothing has been written."""

    status_code = 400
    default_message = "Invalid request"


class AuthenticationRequiredError(OrderError):
    """Raised when an operation needs a verified caller identity."""

    status_code = 401
    default_message = "Unauthorized"


class PermissionDeniedError(OrderError):
    """Raised when a verified caller lacks the role an operation needs."""

    status_code = 403
    default_message = "Forbidden"


class OrderNotFoundError(OrderError):
    """Order not found error"""

    status_code = 404
    default_message = "Order not found"


class SessionMismatchError(OrderError):
    """
    Raised when a checkout session is presented for an order it is not bound to.

    Prevents a paid session for one order from confirming a different order.
    """

    status_code = 400
    default_message = "Session ID mismatch"


class PaymentNotCompletedError(OrderError):
    """Raised when the processor reports a session that can no longer be paid."""

    status_code = 400
    default_message = "Payment not completed"


class UpstreamGatewayError(OrderError):
    """Raised when the payment processor fails or times out."""

    status_code = 500
    default_message = "Payment processor request failed"


class PersistenceError(OrderError):
    """Raised when the order store rejects or fails a write."""

    status_code = 500
    default_message = "Failed to save order"


class MisconfiguredServiceError(OrderError):
    """Raised when a required client (store, processor) was never configured."""

    status_code = 500
    default_message = "Server configuration error"
