"""
Hosted checkout session issuance for an existing order.

The session id is attached to the order only after Stripe has issued it,
so a failed gateway call leaves the order untouched and the call can simply
be repeated.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from otw_orders.config import Settings, get_settings
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import (
    MinorUnitAmount,
    MisconfiguredServiceError,
    OrderSummary,
    OrderValidationError,
    UpstreamGatewayError,
    parse_customer_info,
)
from otw_orders.integrations.stripe_gateway import StripeGateway
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stripe rejects metadata values longer than this
METADATA_VALUE_LIMIT = 500


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    url: str
    order_id: str


class CheckoutSessionGateway:
    """Issues a Stripe Checkout session for an order and binds it to the order."""

    def __init__(
        self,
        store: Optional[OrderStore],
        gateway: Optional[StripeGateway],
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings or get_settings()

    def build_line_items(self, order: OrderSummary, amount: MinorUnitAmount) -> List[Dict[str, Any]]:
        """Exactly one line item built from the service title and description."""
        product_data: Dict[str, Any] = {
            "name": order.service_title,
            "metadata": {
                "service_type": order.service_type.value,
                "order_id": order.order_id,
            },
        }
        description = order.service_details.get("description")
        # Stripe rejects an empty description
        if description:
            product_data["description"] = description

        return [
            {
                "price_data": {
                    "currency": self.settings.checkout_currency,
                    "product_data": product_data,
                    "unit_amount": amount.value,
                },
                "quantity": 1,
            }
        ]

    def build_metadata(self, order: OrderSummary) -> Dict[str, str]:
        """
        Processor-side metadata sufficient to identify the order without the
        order store.
        """
        customer = order.customer_info
        metadata = {
            "order_id": order.order_id,
            "user_id": order.owner_id or "guest",
            "service_type": order.service_type.value,
            "service_title": order.service_title,
            "customer_name": customer.get("name", ""),
            "customer_phone": customer.get("phone", ""),
            "customer_address": customer.get("address", ""),
            "special_instructions": customer.get("specialInstructions", ""),
            "source": self.settings.order_source,
        }
        return {key: str(value)[:METADATA_VALUE_LIMIT] for key, value in metadata.items()}

    async def create_session(
        self,
        order: OrderSummary,
        amount: Any,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResult:
        """
        Create a checkout session and bind its id to the order.

        Args:
            order: The order to charge
            amount: Charge in minor units; must be a positive integer
            success_url: Redirect after payment (defaults from settings)
            cancel_url: Redirect on cancel (defaults from settings)

        Returns:
            CheckoutSessionResult: Session id, hosted URL and order id

        Raises:
            OrderValidationError: Bad amount, incomplete customer info, or the
                order is already paid or already bound to a session
            UpstreamGatewayError: Stripe failed or timed out (order unchanged)
            MisconfiguredServiceError: Gateway or store not configured
        """
        minor_amount = MinorUnitAmount.parse(amount)
        customer = parse_customer_info(order.customer_info)

        if self.gateway is None or self.store is None:
            logger.error(
                "checkout_not_configured",
                gateway=self.gateway is not None,
                store=self.store is not None,
            )
            raise MisconfiguredServiceError()

        if order.is_paid:
            metrics.record_checkout_session("rejected")
            raise OrderValidationError("Order is already paid")
        if order.external_session_id:
            metrics.record_checkout_session("rejected")
            raise OrderValidationError("Checkout session already created for this order")

        try:
            session = await self.gateway.create_checkout_session(
                line_items=self.build_line_items(order, minor_amount),
                metadata=self.build_metadata(order),
                success_url=success_url or self.settings.checkout_success_url(order.order_id),
                cancel_url=cancel_url
                or self.settings.checkout_cancel_url(order.service_type.value),
                customer_email=customer.email,
                idempotency_key=f"otw-checkout-{order.order_id}-{uuid.uuid4().hex}",
            )
        except UpstreamGatewayError:
            metrics.record_checkout_session("gateway_error")
            logger.error("checkout_session_failed", order_id=order.order_id)
            raise

        await self.store.attach_session(order.order_id, session.session_id)

        metrics.record_checkout_session("created", minor_amount.value)
        logger.info(
            "checkout_session_bound",
            order_id=order.order_id,
            session_id=session.session_id,
            amount=minor_amount.value,
        )

        return CheckoutSessionResult(
            session_id=session.session_id,
            url=session.url,
            order_id=order.order_id,
        )
