"""
Index mirror background worker.

Continuously polls the index mirror outbox and re-applies rows whose inline
write failed, bounding how long a "my orders" entry can lag its order.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from otw_orders.config import get_settings
from otw_orders.database.index_mirror import IndexMirror
from otw_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class IndexMirrorWorker:
    """Polls the mirror outbox until stopped."""

    def __init__(self, mirror: IndexMirror, poll_interval_seconds: float):
        self.mirror = mirror
        self.poll_interval_seconds = poll_interval_seconds
        self.running = False

    async def run_once(self) -> int:
        """
        Process one batch; errors are logged so the loop keeps going.

        Returns:
            int: Rows applied
        """
        try:
            return await self.mirror.process_batch()
        except Exception as e:
            logger.error("index_mirror_batch_error", error=str(e))
            return 0

    async def start(self) -> None:
        self.running = True
        logger.info(
            "index_mirror_worker_started",
            batch_size=self.mirror.batch_size,
            poll_interval_seconds=self.poll_interval_seconds,
        )

        while self.running:
            applied = await self.run_once()
            # Drain a backlog without waiting between full batches
            if applied < self.mirror.batch_size:
                await asyncio.sleep(self.poll_interval_seconds)

        logger.info("index_mirror_worker_stopped")

    def stop(self) -> None:
        logger.info("index_mirror_worker_stopping")
        self.running = False


async def start_index_mirror_worker(poll_interval_seconds: Optional[float] = None) -> None:
    """
    Start the index mirror worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    setup_logging()
    settings = get_settings()

    worker = IndexMirrorWorker(
        IndexMirror(),
        poll_interval_seconds=poll_interval_seconds
        or settings.index_mirror_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("index_mirror_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("index_mirror_worker_error", error=str(e))
        raise


def main() -> None:
    asyncio.run(start_index_mirror_worker())


if __name__ == "__main__":
    main()
