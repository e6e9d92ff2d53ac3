"""
Domain types for OTW orders.

Wire format is camelCase (the web client's shape); attribute names are
snake_case. Every request-facing type validates at the boundary and is
converted to an OrderValidationError by the parse_* helpers, so callers never
see pydantic's ValidationError.
"""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .errors import OrderValidationError

logger = structlog.get_logger(__name__)


class ServiceType(str, Enum):
    """Kinds of service an order can request."""

    GROCERY = "grocery"
    RIDES = "rides"
    PACKAGE = "package"


class PaymentMethod(str, Enum):
    """How the customer pays: hosted card checkout now, or on contact/delivery."""

    CONTACT = "contact"
    CARD = "card"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Payment states from which a transition to paid or failed is still allowed
UNSETTLED_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ============================================================================
# Service details (discriminated on "type")
# ============================================================================

class GroceryPayload(CamelModel):
    selected_store: Optional[str] = None
    delivery_time: Optional[str] = None
    receipt: Optional[str] = None
    grocery_list: Optional[Union[str, List[str]]] = None


class RidesPayload(CamelModel):
    pickup_location: Optional[str] = None
    destination: Optional[str] = None
    vehicle_type: Optional[str] = None
    passengers: Optional[int] = None
    scheduled_time: Optional[str] = None
    distance: Optional[Union[float, str]] = None
    fare_breakdown: Optional[Dict[str, Any]] = None
    estimated_arrival: Optional[str] = None


class PackagePayload(CamelModel):
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    package_size: Optional[str] = None
    weight: Optional[float] = None
    fragile: Optional[bool] = None


class _ServiceDetailsBase(CamelModel):
    """Fields shared by every service variant."""

    title: str
    description: str = ""
    estimated_price: float

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title is required")
        return v.strip()

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("estimated_price", mode="before")
    @classmethod
    def validate_estimated_price(cls, v: Any) -> Any:
        """Only real numbers: no booleans, no numeric strings, no NaN/inf."""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("estimatedPrice must be a number")
        if not math.isfinite(v) or v < 0:
            raise ValueError("estimatedPrice must be a finite non-negative number")
        return v

    @field_validator("details", mode="before", check_fields=False)
    @classmethod
    def default_details(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def service_type(self) -> ServiceType:
        return ServiceType(self.type)  # type: ignore[attr-defined]


class GroceryDetails(_ServiceDetailsBase):
    type: Literal["grocery"]
    details: GroceryPayload = Field(default_factory=GroceryPayload, alias="serviceDetails")


class RidesDetails(_ServiceDetailsBase):
    type: Literal["rides"]
    details: RidesPayload = Field(default_factory=RidesPayload, alias="serviceDetails")


class PackageDetails(_ServiceDetailsBase):
    type: Literal["package"]
    details: PackagePayload = Field(default_factory=PackagePayload, alias="serviceDetails")


ServiceDetails = Annotated[
    Union[GroceryDetails, RidesDetails, PackageDetails],
    Field(discriminator="type"),
]

_service_details_adapter: TypeAdapter = TypeAdapter(ServiceDetails)


class CustomerInfo(CamelModel):
    """Contact and delivery details. Everything but the instructions is required."""

    name: str
    phone: str
    email: str
    address: str
    special_instructions: str = ""

    @field_validator("name", "phone", "email", "address")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("field is required")
        return v.strip()

    @field_validator("special_instructions", mode="before")
    @classmethod
    def default_instructions(cls, v: Any) -> Any:
        return "" if v is None else v


class MinorUnitAmount(BaseModel):
    """
    A charge amount in minor currency units (cents).

    Strict positive integer: 0, negatives, floats, numeric strings and
    booleans are all rejected.
    """

    value: StrictInt = Field(..., gt=0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, raw: Any) -> "MinorUnitAmount":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(value=raw)
        except ValidationError as e:
            logger.info("amount_rejected", amount=repr(raw), errors=e.error_count())
            raise OrderValidationError("Invalid amount")

    @property
    def major_units(self) -> float:
        return minor_to_major(self.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def minor_to_major(amount: int) -> float:
    """Convert processor minor units (cents) to a price rounded to cents."""
    return round(amount / 100, 2)


def parse_service_details(raw: Any) -> Union[GroceryDetails, RidesDetails, PackageDetails]:
    """Validate a raw serviceDetails mapping into its typed variant."""
    if isinstance(raw, _ServiceDetailsBase):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, Mapping):
        raise OrderValidationError("Invalid service details")
    try:
        return _service_details_adapter.validate_python(dict(raw))
    except ValidationError as e:
        logger.info(
            "service_details_rejected",
            service_type=raw.get("type"),
            errors=[err["msg"] for err in e.errors()],
        )
        raise OrderValidationError("Invalid service details")


def parse_customer_info(raw: Any) -> CustomerInfo:
    """Validate a raw customerInfo mapping."""
    if isinstance(raw, CustomerInfo):
        return raw
    if not isinstance(raw, Mapping):
        raise OrderValidationError("Missing required customer information")
    try:
        return CustomerInfo.model_validate(dict(raw))
    except ValidationError as e:
        logger.info(
            "customer_info_rejected",
            fields=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
        )
        raise OrderValidationError("Missing required customer information")


def parse_payment_method(raw: Any) -> PaymentMethod:
    if isinstance(raw, PaymentMethod):
        return raw
    try:
        return PaymentMethod(raw)
    except ValueError:
        raise OrderValidationError("Invalid payment method")


# ============================================================================
# Read models
# ============================================================================

class OrderSummary(CamelModel):
    """Client-facing view of the primary order record."""

    order_id: str
    owner_id: Optional[str] = Field(default=None, alias="userId")
    service_type: ServiceType
    service_details: Dict[str, Any]
    customer_info: Dict[str, Any]
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    estimated_price: float
    actual_price: Optional[float] = None
    external_session_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    payment_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assigned_helper: Optional[str] = None
    notes: List[Any] = Field(default_factory=list)
    request_metadata: Dict[str, Any] = Field(default_factory=dict, alias="metadata")

    @classmethod
    def from_record(cls, record: Any) -> "OrderSummary":
        return cls(
            order_id=record.order_id,
            owner_id=record.owner_id,
            service_type=record.service_type,
            service_details=record.service_details or {},
            customer_info=record.customer_info or {},
            payment_method=record.payment_method,
            payment_status=record.payment_status,
            order_status=record.order_status,
            estimated_price=record.estimated_price,
            actual_price=record.actual_price,
            external_session_id=record.external_session_id,
            external_payment_id=record.external_payment_id,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
            payment_completed_at=record.payment_completed_at,
            completed_at=record.completed_at,
            assigned_helper=record.assigned_helper,
            notes=list(record.notes or []),
            request_metadata=dict(record.request_metadata or {}),
        )

    @property
    def service_title(self) -> str:
        return self.service_details.get("title", "")

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class IndexEntrySummary(CamelModel):
    """One row of a caller's "my orders" listing."""

    order_id: str
    service_type: ServiceType
    service_title: str
    estimated_price: float
    payment_method: PaymentMethod
    order_status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime
    updated_at: datetime
