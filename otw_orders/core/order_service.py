"""
Order creation.

Validates the request at the boundary, assigns the order id, sets the initial
payment state from the payment method and commits through the OrderStore.
Validation failures raise before anything is written.
"""
import secrets
import time
from typing import Any, Dict, Optional, Tuple

import structlog

from otw_orders.config import Settings, get_settings
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import (
    CustomerInfo,
    OrderStatus,
    OrderSummary,
    PaymentMethod,
    PaymentStatus,
    ServiceDetails,
    parse_customer_info,
    parse_payment_method,
    parse_service_details,
    utcnow,
)
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderService:
    """Creates orders for both pay-now (card) and pay-on-contact flows."""

    def __init__(self, store: OrderStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def generate_order_id(self) -> str:
        """``{PREFIX}-{unix millis}-{8 upper hex}``, e.g. ``OTW-1718000000000-9F1C2A7B``."""
        millis = int(time.time() * 1000)
        suffix = secrets.token_hex(4).upper()
        return f"{self.settings.order_id_prefix}-{millis}-{suffix}"

    @staticmethod
    def validate(
        service_details: Any, customer_info: Any, payment_method: Any
    ) -> Tuple[ServiceDetails, CustomerInfo, PaymentMethod]:
        """
        Validate raw request fields into domain types.

        Raises:
            OrderValidationError: On any invalid field
        """
        return (
            parse_service_details(service_details),
            parse_customer_info(customer_info),
            parse_payment_method(payment_method),
        )

    @staticmethod
    def initial_payment_status(payment_method: PaymentMethod) -> PaymentStatus:
        if payment_method == PaymentMethod.CARD:
            return PaymentStatus.PROCESSING
        return PaymentStatus.PENDING

    async def create_order(
        self,
        service_details: Any,
        customer_info: Any,
        payment_method: Any,
        owner_id: Optional[str] = None,
        request_metadata: Optional[Dict[str, Any]] = None,
    ) -> OrderSummary:
        """
        Create and persist a new order.

        Args:
            service_details: Raw or typed service details
            customer_info: Raw or typed customer info
            payment_method: "card" or "contact"
            owner_id: Resolved identity id, None for a guest
            request_metadata: Request context (user agent, client ip)

        Returns:
            OrderSummary: The committed order

        Raises:
            OrderValidationError: If input is invalid (nothing written)
            PersistenceError: If the primary write fails
        """
        start = time.perf_counter()
        details, customer, method = self.validate(service_details, customer_info, payment_method)

        now = utcnow()
        order = OrderSummary(
            order_id=self.generate_order_id(),
            owner_id=owner_id,
            service_type=details.service_type,
            service_details=details.model_dump(mode="json", by_alias=True),
            customer_info=customer.model_dump(mode="json", by_alias=True),
            payment_method=method,
            payment_status=self.initial_payment_status(method),
            order_status=OrderStatus.PENDING,
            estimated_price=details.estimated_price,
            created_at=now,
            updated_at=now,
            request_metadata={**(request_metadata or {}), "source": self.settings.order_source},
        )

        committed = await self.store.commit_order(order)

        metrics.record_order_created(
            service_type=committed.service_type.value,
            payment_method=committed.payment_method.value,
            authenticated=owner_id is not None,
            duration_seconds=time.perf_counter() - start,
        )
        logger.info(
            "order_created",
            order_id=committed.order_id,
            service_type=committed.service_type.value,
            payment_method=committed.payment_method.value,
            payment_status=committed.payment_status.value,
            guest=owner_id is None,
        )
        return committed
