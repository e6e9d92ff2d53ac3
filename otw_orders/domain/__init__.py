"""Domain types and error taxonomy shared by every layer."""
from .errors import (
    AuthenticationRequiredError,
    MisconfiguredServiceError,
    OrderError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentNotCompletedError,
    PermissionDeniedError,
    PersistenceError,
    SessionMismatchError,
    UpstreamGatewayError,
)
from .models import (
    UNSETTLED_PAYMENT_STATUSES,
    CustomerInfo,
    GroceryDetails,
    IndexEntrySummary,
    MinorUnitAmount,
    OrderStatus,
    OrderSummary,
    PackageDetails,
    PaymentMethod,
    PaymentStatus,
    RidesDetails,
    ServiceDetails,
    ServiceType,
    minor_to_major,
    parse_customer_info,
    parse_payment_method,
    parse_service_details,
    utcnow,
)

__all__ = [
    "AuthenticationRequiredError",
    "CustomerInfo",
    "GroceryDetails",
    "IndexEntrySummary",
    "MinorUnitAmount",
    "MisconfiguredServiceError",
    "OrderError",
    "OrderNotFoundError",
    "OrderStatus",
    "OrderSummary",
    "OrderValidationError",
    "PackageDetails",
    "PaymentMethod",
    "PaymentNotCompletedError",
    "PaymentStatus",
    "PermissionDeniedError",
    "PersistenceError",
    "RidesDetails",
    "ServiceDetails",
    "ServiceType",
    "SessionMismatchError",
    "UNSETTLED_PAYMENT_STATUSES",
    "UpstreamGatewayError",
    "minor_to_major",
    "parse_customer_info",
    "parse_payment_method",
    "parse_service_details",
    "utcnow",
]
