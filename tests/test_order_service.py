"""
Tests for order creation and the primary/index commit.
"""
import re
from typing import Any, Dict
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from otw_orders.core.order_service import OrderService
from otw_orders.database.models import IndexMirrorEvent, OrderRecord, UserOrderEntry
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import (
    OrderStatus,
    OrderValidationError,
    PaymentStatus,
    PersistenceError,
)

ORDER_ID_PATTERN = re.compile(r"^[A-Z]+-\d+-[A-F0-9]{8}$")


async def _count(store: OrderStore, model: Any) -> int:
    async with store.session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestOrderIds:
    """Test suite for order id generation."""

    @pytest.mark.unit
    def test_format(self, order_service: OrderService) -> None:
        order_id = order_service.generate_order_id()
        assert ORDER_ID_PATTERN.match(order_id)
        assert order_id.startswith("OTW-")

    @pytest.mark.unit
    def test_unique_across_10000_ids(self, order_service: OrderService) -> None:
        ids = [order_service.generate_order_id() for _ in range(10_000)]
        assert all(ORDER_ID_PATTERN.match(order_id) for order_id in ids)
        assert len(set(ids)) == len(ids)


class TestCreateOrder:
    """Test suite for OrderService.create_order."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_guest_order(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        order = await order_service.create_order(
            sample_service_details, sample_customer_info, "contact"
        )

        assert ORDER_ID_PATTERN.match(order.order_id)
        assert order.owner_id is None
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_status == OrderStatus.PENDING
        assert order.estimated_price == 25.99
        assert order.actual_price is None
        assert order.external_session_id is None
        assert order.request_metadata["source"] == "otw_web"

        stored = await store.get_order(order.order_id)
        assert stored.customer_info["specialInstructions"] == "Ring twice"
        assert stored.service_details["serviceDetails"]["selectedStore"] == "Kroger"

        # Guests get no index entry and no mirror row
        assert await _count(store, UserOrderEntry) == 0
        assert await _count(store, IndexMirrorEvent) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_order_starts_processing(
        self,
        order_service: OrderService,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        order = await order_service.create_order(
            sample_service_details, sample_customer_info, "card"
        )
        assert order.payment_status == PaymentStatus.PROCESSING
        assert order.order_status == OrderStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authenticated_order_writes_index_entry(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        order = await order_service.create_order(
            sample_service_details,
            sample_customer_info,
            "contact",
            owner_id="user-123",
            request_metadata={"userAgent": "pytest", "ip": "10.0.0.1"},
        )

        assert order.owner_id == "user-123"
        assert order.request_metadata == {
            "userAgent": "pytest",
            "ip": "10.0.0.1",
            "source": "otw_web",
        }

        entry = await store.get_index_entry("user-123", order.order_id)
        assert entry is not None
        assert entry.order_id == order.order_id
        assert entry.service_type == order.service_type
        assert entry.order_status == order.order_status
        assert entry.payment_status == order.payment_status
        assert entry.service_title == "Weekly groceries"

        async with store.session_factory() as db:
            event = (await db.execute(select(IndexMirrorEvent))).scalar_one()
        assert event.applied is True
        assert event.reason == "created"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("service_details", {"type": "laundry", "title": "x", "estimatedPrice": 1}),
            ("customer_info", {"name": "Jane"}),
            ("payment_method", "bitcoin"),
        ],
    )
    async def test_validation_failure_writes_nothing(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
        field: str,
        value: Any,
    ) -> None:
        kwargs = {
            "service_details": sample_service_details,
            "customer_info": sample_customer_info,
            "payment_method": "card",
            "owner_id": "user-123",
        }
        kwargs[field] = value

        with pytest.raises(OrderValidationError):
            await order_service.create_order(**kwargs)

        assert await _count(store, OrderRecord) == 0
        assert await _count(store, UserOrderEntry) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_id_collision_fails_loudly(
        self,
        order_service: OrderService,
        store: OrderStore,
        sample_service_details: Dict[str, Any],
        sample_customer_info: Dict[str, Any],
    ) -> None:
        first = await order_service.create_order(
            sample_service_details, sample_customer_info, "contact"
        )

        with patch.object(order_service, "generate_order_id", return_value=first.order_id):
            with pytest.raises(PersistenceError, match="already exists"):
                await order_service.create_order(
                    {**sample_service_details, "title": "Overwrite attempt"},
                    sample_customer_info,
                    "card",
                )

        stored = await store.get_order(first.order_id)
        assert stored.service_title == "Weekly groceries"
        assert stored.payment_method.value == "contact"
