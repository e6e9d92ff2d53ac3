"""
Handlers for Stripe Checkout webhook events.

Completed sessions go through the same PaymentVerifier as the client's
success-page poll; expired or failed sessions cancel the order.
"""
from typing import Any, Dict

import structlog

from otw_orders.core.payment_verifier import PaymentVerifier
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import OrderNotFoundError, SessionMismatchError
from otw_orders.integrations.stripe_gateway import stripe_metadata
from otw_orders.integrations.webhook_handler import WebhookHandler

logger = structlog.get_logger(__name__)

COMPLETED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
FAILED_EVENTS = {
    "checkout.session.expired": "Checkout session expired",
    "checkout.session.async_payment_failed": "Payment failed",
}


class CheckoutEventHandlers:
    def __init__(self, store: OrderStore, verifier: PaymentVerifier):
        self.store = store
        self.verifier = verifier

    def register(self, webhook_handler: WebhookHandler) -> WebhookHandler:
        for event_type in COMPLETED_EVENTS:
            webhook_handler.register_handler(event_type, self.handle_session_completed)
        for event_type, reason in FAILED_EVENTS.items():
            webhook_handler.register_handler(event_type, self._failed_handler(reason))
        return webhook_handler

    async def handle_session_completed(self, session: Any) -> Dict[str, Any]:
        session_id = session["id"]
        order_id = stripe_metadata(session).get("order_id")
        if not order_id:
            logger.warning("webhook_session_without_order", session_id=session_id)
            return {"status": "ignored", "reason": "no order_id in metadata"}

        try:
            result = await self.verifier.verify(session_id, order_id)
        except (OrderNotFoundError, SessionMismatchError) as e:
            # Redelivery cannot fix these
            logger.warning(
                "webhook_session_not_applicable",
                session_id=session_id,
                order_id=order_id,
                error=e.message,
            )
            return {"status": "ignored", "reason": e.message}

        return {
            "status": result.outcome.value,
            "order_id": order_id,
            "payment_status": result.payment_status.value,
        }

    def _failed_handler(self, reason: str):
        async def handle(session: Any) -> Dict[str, Any]:
            return await self.handle_session_failed(session, reason)

        return handle

    async def handle_session_failed(self, session: Any, reason: str) -> Dict[str, Any]:
        session_id = session["id"]
        order_id = stripe_metadata(session).get("order_id")
        if not order_id:
            logger.warning("webhook_session_without_order", session_id=session_id)
            return {"status": "ignored", "reason": "no order_id in metadata"}

        try:
            order, failed = await self.store.mark_failed(order_id, session_id, reason)
        except OrderNotFoundError as e:
            logger.warning("webhook_session_not_applicable", order_id=order_id, error=e.message)
            return {"status": "ignored", "reason": e.message}

        return {
            "status": "failed" if failed else "unchanged",
            "order_id": order_id,
            "payment_status": order.payment_status.value,
        }
