"""
Tests for the session reconciliation sweep.
"""
from datetime import timedelta
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from otw_orders.config import Settings
from otw_orders.core.checkout_session import CheckoutSessionGateway
from otw_orders.core.order_service import OrderService
from otw_orders.core.payment_verifier import PaymentVerifier
from otw_orders.core.reconciliation import SessionReconciler
from otw_orders.database.models import OrderRecord
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import OrderStatus, OrderSummary, PaymentStatus, utcnow
from otw_orders.integrations.stripe_gateway import GatewayErrorType, StripeGatewayError
from otw_orders.workers.reconciliation_worker import run_reconciliation

from tests.factories import expired_session, open_session, paid_session


async def _stale_bound_order(
    store: OrderStore,
    gateway: AsyncMock,
    settings: Settings,
    service_details: Dict[str, Any],
    customer_info: Dict[str, Any],
) -> OrderSummary:
    order = await OrderService(store, settings).create_order(
        service_details, customer_info, "card", owner_id="user-123"
    )
    await CheckoutSessionGateway(store, gateway, settings).create_session(order, 2599)

    async with store.session_factory.begin() as db:
        await db.execute(
            update(OrderRecord)
            .where(OrderRecord.order_id == order.order_id)
            .values(updated_at=utcnow() - timedelta(hours=1))
        )
    return await store.get_order(order.order_id)


@pytest.fixture
def reconciler(store: OrderStore, gateway: AsyncMock, test_settings: Settings) -> SessionReconciler:
    return SessionReconciler(store, PaymentVerifier(store, gateway), test_settings)


class TestSessionReconciler:
    """Test suite for SessionReconciler.run."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settles_stale_sessions(
        self,
        reconciler: SessionReconciler,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        orders = [
            await _stale_bound_order(
                store, gateway, test_settings, sample_service_details, sample_customer_info
            )
            for _ in range(3)
        ]
        states = {
            "cs_test_1": paid_session("cs_test_1"),
            "cs_test_2": expired_session("cs_test_2"),
            "cs_test_3": open_session("cs_test_3"),
        }
        gateway.retrieve_session.side_effect = lambda session_id: states[session_id]

        outcomes = await reconciler.run()

        assert outcomes == {"confirmed": 1, "failed": 1, "pending": 1}

        paid, expired, still_open = [await store.get_order(o.order_id) for o in orders]
        assert paid.payment_status == PaymentStatus.PAID
        assert expired.payment_status == PaymentStatus.FAILED
        assert expired.order_status == OrderStatus.CANCELLED
        assert expired.failure_reason == "Checkout session expired"
        assert still_open.payment_status == PaymentStatus.PROCESSING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_sessions_left_alone(
        self,
        reconciler: SessionReconciler,
        order_service: OrderService,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        order = await order_service.create_order(
            sample_service_details, sample_customer_info, "card"
        )
        await CheckoutSessionGateway(store, gateway, test_settings).create_session(order, 2599)

        assert await reconciler.run() == {}
        gateway.retrieve_session.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_error_counted_and_sweep_continues(
        self,
        reconciler: SessionReconciler,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        for _ in range(2):
            await _stale_bound_order(
                store, gateway, test_settings, sample_service_details, sample_customer_info
            )

        def retrieve(session_id: str) -> Any:
            if session_id == "cs_test_1":
                raise StripeGatewayError("timeout", GatewayErrorType.TRANSIENT)
            return paid_session(session_id)

        gateway.retrieve_session.side_effect = retrieve

        outcomes = await reconciler.run()

        assert outcomes == {"error": 1, "confirmed": 1}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_open_sessions_rotate_out_of_full_batches(
        self,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        settings = test_settings.model_copy(update={"reconciliation_batch_size": 2})
        reconciler = SessionReconciler(store, PaymentVerifier(store, gateway), settings)
        orders = [
            await _stale_bound_order(
                store, gateway, settings, sample_service_details, sample_customer_info
            )
            for _ in range(3)
        ]
        states = {
            "cs_test_1": open_session("cs_test_1"),
            "cs_test_2": open_session("cs_test_2"),
            "cs_test_3": paid_session("cs_test_3"),
        }
        gateway.retrieve_session.side_effect = lambda session_id: states[session_id]

        assert await reconciler.run() == {"pending": 2}
        # The paid session, never checked, now leads the queue
        assert await reconciler.run() == {"confirmed": 1, "pending": 1}

        paid = await store.get_order(orders[2].order_id)
        assert paid.payment_status == PaymentStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checked_orders_move_to_back_of_queue(
        self,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        orders = [
            await _stale_bound_order(
                store, gateway, test_settings, sample_service_details, sample_customer_info
            )
            for _ in range(3)
        ]
        cutoff = utcnow()

        first = await store.find_unsettled_sessions(older_than=cutoff, limit=2)
        second = await store.find_unsettled_sessions(older_than=cutoff, limit=2)

        assert [o.order_id for o in first] == [orders[0].order_id, orders[1].order_id]
        assert [o.order_id for o in second][0] == orders[2].order_id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_reconciliation_helper(
        self,
        reconciler: SessionReconciler,
        store: OrderStore,
        gateway: AsyncMock,
        test_settings: Settings,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        await _stale_bound_order(
            store, gateway, test_settings, sample_service_details, sample_customer_info
        )
        gateway.retrieve_session.side_effect = None
        gateway.retrieve_session.return_value = paid_session("cs_test_1")

        assert await run_reconciliation(reconciler) == {"confirmed": 1}
