"""
Session reconciliation sweep.

Finds unsettled orders whose checkout session was created a while ago and
runs them through the PaymentVerifier, so a missed webhook or an abandoned
success-page poll still ends in a settled order:

- Paid sessions are confirmed
- Expired sessions are marked failed and the order cancelled
- Open sessions are left alone
"""
from collections import Counter
from datetime import timedelta
from typing import Dict, Optional

import structlog

from otw_orders.config import Settings, get_settings
from otw_orders.core.payment_verifier import PaymentVerifier, VerificationOutcome
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import OrderError, utcnow
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EXPIRED_SESSION_REASON = "Checkout session expired"


class SessionReconciler:
    """Runs one reconciliation sweep over stale unsettled sessions."""

    def __init__(
        self,
        store: OrderStore,
        verifier: PaymentVerifier,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.settings = settings or get_settings()
        logger.info("session_reconciler_initialized")

    async def run(self) -> Dict[str, int]:
        """
        Reconcile one batch.

        A failure on one order is logged and counted; the sweep continues.

        Returns:
            Dict[str, int]: Count of orders per outcome
        """
        cutoff = utcnow() - timedelta(minutes=self.settings.reconciliation_min_age_minutes)
        orders = await self.store.find_unsettled_sessions(
            older_than=cutoff, limit=self.settings.reconciliation_batch_size
        )

        logger.info("reconciliation_started", candidates=len(orders), cutoff=cutoff.isoformat())

        outcomes: Counter = Counter()
        for order in orders:
            session_id = order.external_session_id
            try:
                result = await self.verifier.verify(session_id, order.order_id)
                if result.outcome == VerificationOutcome.EXPIRED:
                    _, failed = await self.store.mark_failed(
                        order.order_id, session_id, EXPIRED_SESSION_REASON
                    )
                    outcomes["failed" if failed else "already_settled"] += 1
                else:
                    outcomes[result.outcome.value] += 1
            except OrderError as e:
                outcomes["error"] += 1
                logger.error(
                    "reconciliation_order_failed",
                    order_id=order.order_id,
                    session_id=session_id,
                    error=e.message,
                    error_type=type(e).__name__,
                )

        summary = dict(outcomes)
        metrics.record_reconciliation(summary)
        logger.info("reconciliation_completed", checked=len(orders), **summary)
        return summary
