"""
Pydantic schemas for API request/response models.

Request bodies are deliberately loose: field-level validation happens in the
domain parse helpers so that every rejection carries the same client-facing
message regardless of which entry point received it.
"""
from typing import Any, Dict, List, Optional

from pydantic import Field

from otw_orders.domain.models import CamelModel, IndexEntrySummary


class CreateOrderRequest(CamelModel):
    """Request schema for creating an order."""

    service_details: Any = None
    customer_info: Any = None
    payment_method: Any = None
    # Accepted for compatibility with the web client; never stored or logged
    card_details: Any = Field(default=None, exclude=True, repr=False)
    timestamp: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "serviceDetails": {
                        "type": "grocery",
                        "title": "Weekly groceries",
                        "description": "Pickup from Kroger",
                        "estimatedPrice": 25.99,
                        "serviceDetails": {"selectedStore": "Kroger"},
                    },
                    "customerInfo": {
                        "name": "Jane Doe",
                        "phone": "555-0100",
                        "email": "jane@example.com",
                        "address": "1 Main St",
                    },
                    "paymentMethod": "contact",
                }
            ]
        }
    }


class CreateOrderResponse(CamelModel):
    """Response schema for order creation."""

    success: bool = True
    order_id: str
    message: str = "Order created successfully"
    order: Dict[str, Any]


class CheckoutSessionRequest(CamelModel):
    """Request schema for creating a card order and its checkout session."""

    service_details: Any = None
    customer_info: Any = None
    amount: Any = Field(default=None, description="Charge in minor currency units (cents)")


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: str
    order_id: str


class VerifyPaymentRequest(CamelModel):
    session_id: Optional[str] = None
    order_id: Optional[str] = None


class VerifyPaymentResponse(CamelModel):
    """Response schema for payment verification. ``success`` is false while unpaid."""

    success: bool
    payment_status: str
    outcome: str
    order: Dict[str, Any]


class Pagination(CamelModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class UserOrdersResponse(CamelModel):
    success: bool = True
    orders: List[IndexEntrySummary]
    pagination: Pagination


class WebhookResponse(CamelModel):
    status: str
    event_id: str
    event_type: Optional[str] = None
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class ReconciliationResponse(CamelModel):
    success: bool = True
    outcomes: Dict[str, int]


class HealthCheckResponse(CamelModel):
    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class ErrorResponse(CamelModel):
    error: str
