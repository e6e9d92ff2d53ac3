"""
Per-identity index mirror.

Applies IndexMirrorEvent outbox rows to the user_otw_orders index. A row is
written in the same transaction as the primary order change; applying it
re-projects whatever the primary record holds now, so it is idempotent and
safe to retry any number of times.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otw_orders.config import get_settings
from otw_orders.database.connection import get_session_factory
from otw_orders.database.models import IndexMirrorEvent, OrderRecord, UserOrderEntry
from otw_orders.domain import utcnow
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IndexMirror:
    """
    Applies pending index mirror rows.

    Used inline right after a primary write (best-effort) and in batches by
    the index mirror worker.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.index_mirror_batch_size
        self.max_attempts = max_attempts or settings.index_mirror_max_attempts

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def project(record: OrderRecord) -> Dict[str, Any]:
        """Index entry fields derived from a primary record."""
        return {
            "service_type": record.service_type,
            "service_title": (record.service_details or {}).get("title", ""),
            "estimated_price": record.estimated_price,
            "payment_method": record.payment_method,
            "order_status": record.order_status,
            "payment_status": record.payment_status,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    async def _upsert_entry(self, db: AsyncSession, event: IndexMirrorEvent) -> None:
        record = await db.get(OrderRecord, event.order_id)
        if record is None:
            raise LookupError(f"Primary order {event.order_id} not found")

        projection = self.project(record)
        entry = await db.get(UserOrderEntry, (event.owner_id, event.order_id))
        if entry is None:
            db.add(
                UserOrderEntry(
                    owner_id=event.owner_id,
                    order_id=event.order_id,
                    **projection,
                )
            )
        else:
            for field, value in projection.items():
                setattr(entry, field, value)

    async def apply(self, event_id: int) -> bool:
        """
        Apply one outbox row.

        Never raises: a failure is logged, counted on the row, and left for
        the worker to retry.

        Returns:
            bool: True if the index entry now matches the primary record
        """
        try:
            async with self.session_factory.begin() as db:
                event = await db.get(IndexMirrorEvent, event_id)
                if event is None or event.applied:
                    return True

                await self._upsert_entry(db, event)
                event.applied = True
                event.applied_at = utcnow()
                event.attempts += 1

            metrics.record_index_mirror_write("applied")
            logger.info(
                "index_mirror_applied",
                event_id=event_id,
                order_id=event.order_id,
                reason=event.reason,
            )
            return True

        except Exception as e:
            metrics.record_index_mirror_write("failed")
            logger.warning(
                "index_mirror_failed",
                event_id=event_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_failure(event_id, str(e))
            return False

    async def _record_failure(self, event_id: int, error: str) -> None:
        try:
            async with self.session_factory.begin() as db:
                await db.execute(
                    update(IndexMirrorEvent)
                    .where(IndexMirrorEvent.id == event_id)
                    .values(
                        attempts=IndexMirrorEvent.attempts + 1,
                        last_error=error[:1000],
                    )
                    .execution_options(synchronize_session=False)
                )
        except Exception as e:
            logger.error(
                "index_mirror_failure_not_recorded",
                event_id=event_id,
                error=str(e),
            )

    async def _fetch_pending_ids(self, db: AsyncSession) -> List[int]:
        stmt = (
            select(IndexMirrorEvent.id)
            .where(
                IndexMirrorEvent.applied == False,  # noqa: E712
                IndexMirrorEvent.attempts < self.max_attempts,
            )
            .order_by(IndexMirrorEvent.created_at, IndexMirrorEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def process_batch(self) -> int:
        """
        Apply a batch of pending rows.

        Returns:
            int: Number of rows applied
        """
        async with self.session_factory() as db:
            event_ids = await self._fetch_pending_ids(db)

        if not event_ids:
            metrics.set_index_mirror_backlog(0)
            return 0

        logger.info("index_mirror_batch_started", batch_size=len(event_ids))

        applied = 0
        for event_id in event_ids:
            if await self.apply(event_id):
                applied += 1

        pending = await self.get_pending_count()
        metrics.set_index_mirror_backlog(pending)

        logger.info(
            "index_mirror_batch_processed",
            total=len(event_ids),
            applied=applied,
            failed=len(event_ids) - applied,
            pending=pending,
        )
        return applied

    async def get_pending_count(self) -> int:
        """
        Get count of rows not yet applied.

        Rows that exhausted their attempts are included; they need manual repair.
        """
        async with self.session_factory() as db:
            stmt = select(func.count()).select_from(IndexMirrorEvent).where(
                IndexMirrorEvent.applied == False  # noqa: E712
            )
            result = await db.execute(stmt)
            return int(result.scalar_one())
