"""
Payment verification.

Reconciles Stripe's authoritative session state into the order record. Safe
to call any number of times, from any number of callers: the transition to
paid is a compare-and-set in the store, so payment_completed_at is written
once.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from otw_orders.database.order_store import OrderStore
from otw_orders.domain import (
    MisconfiguredServiceError,
    OrderNotFoundError,
    OrderSummary,
    OrderValidationError,
    PaymentStatus,
    SessionMismatchError,
    minor_to_major,
)
from otw_orders.integrations.stripe_gateway import StripeGateway
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class VerificationOutcome(str, Enum):
    CONFIRMED = "confirmed"  # this call moved the order to paid
    ALREADY_PAID = "already_paid"  # paid before this call, nothing written
    PENDING = "pending"  # session still open, nothing written
    EXPIRED = "expired"  # session can no longer be paid, nothing written


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    order: OrderSummary

    @property
    def success(self) -> bool:
        return self.outcome in (VerificationOutcome.CONFIRMED, VerificationOutcome.ALREADY_PAID)

    @property
    def payment_status(self) -> PaymentStatus:
        return self.order.payment_status


class PaymentVerifier:
    """Confirms orders whose checkout session Stripe reports as paid."""

    def __init__(self, store: Optional[OrderStore], gateway: Optional[StripeGateway]):
        self.store = store
        self.gateway = gateway

    async def verify(self, session_id: Optional[str], order_id: Optional[str]) -> VerificationResult:
        """
        Verify a checkout session against the order it is bound to.

        Args:
            session_id: Stripe Checkout session id
            order_id: Order the caller claims the session pays for

        Returns:
            VerificationResult: Outcome and current order state

        Raises:
            OrderValidationError: Missing ids
            OrderNotFoundError: Unknown order
            SessionMismatchError: Session is not the one bound to the order
            UpstreamGatewayError: Stripe failed or timed out
        """
        if not session_id or not order_id:
            raise OrderValidationError("Missing session ID or order ID")
        if self.gateway is None or self.store is None:
            logger.error("verifier_not_configured")
            raise MisconfiguredServiceError()

        log = logger.bind(order_id=order_id, session_id=session_id)

        state = await self.gateway.retrieve_session(session_id)

        try:
            order = await self.store.get_order(order_id)
        except OrderNotFoundError:
            metrics.record_verification("not_found")
            log.warning("verify_order_not_found")
            raise

        if order.external_session_id != session_id:
            metrics.record_verification("mismatch")
            log.warning(
                "verify_session_mismatch",
                bound_session_id=order.external_session_id,
                session_paid=state.is_paid,
            )
            raise SessionMismatchError()

        if not state.is_paid:
            outcome = (
                VerificationOutcome.EXPIRED if state.is_expired else VerificationOutcome.PENDING
            )
            metrics.record_verification(outcome.value)
            log.info(
                "verify_session_not_paid",
                outcome=outcome.value,
                stripe_payment_status=state.payment_status,
                stripe_status=state.status,
            )
            return VerificationResult(outcome, order)

        if order.is_paid:
            metrics.record_verification(VerificationOutcome.ALREADY_PAID.value)
            log.info("verify_already_paid")
            return VerificationResult(VerificationOutcome.ALREADY_PAID, order)

        if state.amount_total is None:
            log.warning("verify_missing_amount_total")
            actual_price = order.estimated_price
        else:
            actual_price = minor_to_major(state.amount_total)

        updated, transitioned = await self.store.mark_paid(
            order_id,
            session_id,
            actual_price=actual_price,
            payment_intent_id=state.payment_intent_id,
        )

        if transitioned:
            outcome = VerificationOutcome.CONFIRMED
        elif updated.is_paid:
            # Lost the race to a concurrent verifier
            outcome = VerificationOutcome.ALREADY_PAID
        else:
            log.error(
                "verify_paid_session_for_settled_order",
                payment_status=updated.payment_status.value,
            )
            raise OrderValidationError("Order can no longer be marked paid")

        metrics.record_verification(outcome.value)
        log.info(
            "payment_verified",
            outcome=outcome.value,
            actual_price=updated.actual_price,
        )
        return VerificationResult(outcome, updated)
