"""
Tests for the per-identity index mirror and its worker.
"""
from typing import Any, Dict
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from otw_orders.core.order_service import OrderService
from otw_orders.database.index_mirror import IndexMirror
from otw_orders.database.models import IndexMirrorEvent
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import OrderStatus, PaymentStatus
from otw_orders.workers.index_mirror_worker import IndexMirrorWorker


def _failed_writes() -> float:
    return REGISTRY.get_sample_value("otw_index_mirror_writes_total", {"status": "failed"}) or 0.0


async def _mirror_events(store: OrderStore) -> list:
    async with store.session_factory() as db:
        result = await db.execute(select(IndexMirrorEvent).order_by(IndexMirrorEvent.id))
        return list(result.scalars().all())


class TestIndexMirror:
    """Test suite for IndexMirror."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_mirror_write_does_not_fail_order(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        failed_before = _failed_writes()

        with patch.object(
            IndexMirror, "_upsert_entry", side_effect=RuntimeError("index unavailable")
        ):
            order = await order_service.create_order(
                sample_service_details, sample_customer_info, "contact", owner_id="user-123"
            )

        # Primary write stands; index entry is pending repair
        assert (await store.get_order(order.order_id)).order_id == order.order_id
        assert await store.get_index_entry("user-123", order.order_id) is None
        assert _failed_writes() == failed_before + 1

        (event,) = await _mirror_events(store)
        assert event.applied is False
        assert event.attempts == 1
        assert event.last_error == "index unavailable"
        assert await store.mirror.get_pending_count() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_process_batch_repairs_pending_entries(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        with patch.object(IndexMirror, "_upsert_entry", side_effect=RuntimeError("down")):
            first = await order_service.create_order(
                sample_service_details, sample_customer_info, "contact", owner_id="user-123"
            )
            second = await order_service.create_order(
                sample_service_details, sample_customer_info, "card", owner_id="user-123"
            )

        applied = await store.mirror.process_batch()

        assert applied == 2
        assert await store.mirror.get_pending_count() == 0
        for order in (first, second):
            entry = await store.get_index_entry("user-123", order.order_id)
            assert entry is not None
            assert entry.payment_status == order.payment_status

        # Nothing left to do
        assert await store.mirror.process_batch() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_projects_current_record(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        order = await order_service.create_order(
            sample_service_details, sample_customer_info, "card", owner_id="user-123"
        )
        await store.attach_session(order.order_id, "cs_test_9")

        with patch.object(IndexMirror, "_upsert_entry", side_effect=RuntimeError("down")):
            await store.mark_failed(order.order_id, "cs_test_9", "Payment failed")

        stale = await store.get_index_entry("user-123", order.order_id)
        assert stale.payment_status == PaymentStatus.PROCESSING

        await store.mirror.process_batch()

        entry = await store.get_index_entry("user-123", order.order_id)
        assert entry.payment_status == PaymentStatus.FAILED
        assert entry.order_status == OrderStatus.CANCELLED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_exhausted_rows_are_skipped(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        mirror = IndexMirror(session_factory=store.session_factory, max_attempts=2)

        with patch.object(IndexMirror, "_upsert_entry", side_effect=RuntimeError("down")):
            await order_service.create_order(
                sample_service_details, sample_customer_info, "contact", owner_id="user-123"
            )
            assert await mirror.process_batch() == 0

        # Two failed attempts: left for manual repair, still counted as pending
        assert await mirror.process_batch() == 0
        assert await mirror.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_is_noop(self, store: OrderStore) -> None:
        assert await store.mirror.apply(999) is True


class TestIndexMirrorWorker:
    """Test suite for IndexMirrorWorker."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_once_applies_backlog(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        with patch.object(IndexMirror, "_upsert_entry", side_effect=RuntimeError("down")):
            order = await order_service.create_order(
                sample_service_details, sample_customer_info, "contact", owner_id="user-9"
            )

        worker = IndexMirrorWorker(store.mirror, poll_interval_seconds=0.01)

        assert await worker.run_once() == 1
        assert await store.get_index_entry("user-9", order.order_id) is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_survives_errors(self) -> None:
        mirror = AsyncMock()
        mirror.process_batch.side_effect = RuntimeError("database unavailable")

        worker = IndexMirrorWorker(mirror, poll_interval_seconds=0.01)

        assert await worker.run_once() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_ends_loop(self) -> None:
        mirror = AsyncMock()
        mirror.batch_size = 100
        worker = IndexMirrorWorker(mirror, poll_interval_seconds=0.01)

        async def stop_after_first_batch() -> int:
            worker.stop()
            return 0

        mirror.process_batch.side_effect = stop_after_first_batch

        await worker.start()

        assert worker.running is False
        mirror.process_batch.assert_awaited_once()
