"""
Session reconciliation background worker.

Runs the reconciliation sweep at a fixed interval so that paid or expired
checkout sessions settle their orders even when no webhook or client poll
arrives.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from otw_orders.config import get_settings
from otw_orders.core.payment_verifier import PaymentVerifier
from otw_orders.core.reconciliation import SessionReconciler
from otw_orders.database.order_store import OrderStore
from otw_orders.integrations.stripe_gateway import StripeGateway
from otw_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(reconciler: SessionReconciler) -> Dict[str, int]:
    """Run one sweep and flag anything that needs attention."""
    logger.info("session_reconciliation_started")

    outcomes = await reconciler.run()

    if outcomes.get("error"):
        logger.warning(
            "session_reconciliation_errors_detected",
            errors=outcomes["error"],
        )

    logger.info("session_reconciliation_completed", **outcomes)
    return outcomes


async def start_reconciliation_worker(interval_seconds: Optional[float] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults from settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds

    store = OrderStore()
    reconciler = SessionReconciler(store, PaymentVerifier(store, StripeGateway()), settings)

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation(reconciler)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one sweep fails

            # Wait for the next sweep (with periodic checks for shutdown signal)
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Session reconciliation worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between reconciliation sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
