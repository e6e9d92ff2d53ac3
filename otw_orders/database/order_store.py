"""
Order store.

One primary OrderRecord per order plus, for authenticated owners, a
per-identity UserOrderEntry kept in step through IndexMirrorEvent rows.
Every mutation that changes index-visible fields writes its mirror row in the
same transaction as the primary change, then applies it best-effort.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otw_orders.database.connection import get_session_factory
from otw_orders.database.index_mirror import IndexMirror
from otw_orders.database.models import IndexMirrorEvent, OrderRecord, UserOrderEntry
from otw_orders.domain import (
    UNSETTLED_PAYMENT_STATUSES,
    IndexEntrySummary,
    MisconfiguredServiceError,
    OrderNotFoundError,
    OrderStatus,
    OrderSummary,
    OrderValidationError,
    PaymentStatus,
    PersistenceError,
    utcnow,
)

logger = structlog.get_logger(__name__)

_UNSETTLED = [status.value for status in UNSETTLED_PAYMENT_STATUSES]


class OrderStore:
    """
    Persistence for orders and the per-identity index.

    All writes are conditional: creation fails on an existing order id,
    session attach only fills an empty slot, and payment transitions only
    leave an unsettled state once.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        mirror: Optional[IndexMirror] = None,
    ):
        self._session_factory = session_factory
        self._mirror = mirror

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            try:
                self._session_factory = get_session_factory()
            except Exception as e:
                logger.error("order_store_unavailable", error=str(e))
                raise MisconfiguredServiceError()
        return self._session_factory

    @property
    def mirror(self) -> IndexMirror:
        if self._mirror is None:
            self._mirror = IndexMirror(session_factory=self.session_factory)
        return self._mirror

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> OrderSummary:
        """
        Load an order by id.

        Raises:
            OrderNotFoundError: If no such order exists
            PersistenceError: If the store read fails
        """
        try:
            async with self.session_factory() as db:
                record = await db.get(OrderRecord, order_id)
        except SQLAlchemyError as e:
            logger.error("order_read_failed", order_id=order_id, error=str(e))
            raise PersistenceError("Failed to load order")

        if record is None:
            raise OrderNotFoundError()
        return OrderSummary.from_record(record)

    async def get_index_entry(self, owner_id: str, order_id: str) -> Optional[IndexEntrySummary]:
        async with self.session_factory() as db:
            entry = await db.get(UserOrderEntry, (owner_id, order_id))
        return _index_summary(entry) if entry is not None else None

    async def list_index_entries(
        self,
        owner_id: str,
        limit: int = 20,
        offset: int = 0,
        status: Optional[OrderStatus] = None,
    ) -> Tuple[List[IndexEntrySummary], int]:
        """
        List an owner's index entries, newest first.

        Returns:
            Tuple of (entries, total matching entries)
        """
        conditions = [UserOrderEntry.owner_id == owner_id]
        if status is not None:
            conditions.append(UserOrderEntry.order_status == status.value)

        try:
            async with self.session_factory() as db:
                total = (
                    await db.execute(
                        select(func.count()).select_from(UserOrderEntry).where(*conditions)
                    )
                ).scalar_one()
                result = await db.execute(
                    select(UserOrderEntry)
                    .where(*conditions)
                    .order_by(UserOrderEntry.created_at.desc(), UserOrderEntry.order_id)
                    .limit(limit)
                    .offset(offset)
                )
                entries = [_index_summary(entry) for entry in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("index_read_failed", owner_id=owner_id, error=str(e))
            raise PersistenceError("Failed to load orders")

        return entries, int(total)

    async def find_unsettled_sessions(self, older_than: datetime, limit: int) -> List[OrderSummary]:
        """
        Claim a batch of bound, unsettled orders untouched since older_than.

        Never-checked orders come first, then the least recently checked.
        Every returned order has its last_reconciled_at moved to now, so
        sessions that stay open (or keep erroring) rotate to the back of the
        queue instead of filling every batch.
        """
        async with self.session_factory.begin() as db:
            result = await db.execute(
                select(OrderRecord)
                .where(
                    OrderRecord.payment_status.in_(_UNSETTLED),
                    OrderRecord.external_session_id.is_not(None),
                    OrderRecord.updated_at < older_than,
                )
                .order_by(
                    OrderRecord.last_reconciled_at.asc().nulls_first(),
                    OrderRecord.updated_at,
                )
                .limit(limit)
            )
            orders = [OrderSummary.from_record(record) for record in result.scalars().all()]

            if orders:
                await db.execute(
                    update(OrderRecord)
                    .where(OrderRecord.order_id.in_([order.order_id for order in orders]))
                    .values(last_reconciled_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        return orders

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit_order(self, order: OrderSummary) -> OrderSummary:
        """
        Create the primary record and, for an owned order, its index entry.

        The primary insert is create-if-absent. The index entry is written
        through a mirror row committed alongside it; a mirror failure is
        logged and left for the mirror worker.

        Raises:
            PersistenceError: On id collision or any store failure
        """
        record = OrderRecord(
            order_id=order.order_id,
            owner_id=order.owner_id,
            service_type=order.service_type.value,
            service_details=order.service_details,
            customer_info=order.customer_info,
            payment_method=order.payment_method.value,
            payment_status=order.payment_status.value,
            order_status=order.order_status.value,
            estimated_price=order.estimated_price,
            actual_price=order.actual_price,
            external_session_id=order.external_session_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
            notes=list(order.notes),
            request_metadata=dict(order.request_metadata),
        )

        event: Optional[IndexMirrorEvent] = None
        try:
            async with self.session_factory.begin() as db:
                db.add(record)
                if order.owner_id:
                    event = self._mirror_event(order.order_id, order.owner_id, "created")
                    db.add(event)
        except IntegrityError as e:
            logger.error("order_id_collision", order_id=order.order_id, error=str(e))
            raise PersistenceError("Order already exists")
        except SQLAlchemyError as e:
            logger.error("order_write_failed", order_id=order.order_id, error=str(e))
            raise PersistenceError()

        logger.info(
            "order_committed",
            order_id=order.order_id,
            owner_id=order.owner_id,
            indexed=event is not None,
        )

        if event is not None:
            await self.mirror.apply(event.id)

        return OrderSummary.from_record(record)

    async def attach_session(self, order_id: str, session_id: str) -> OrderSummary:
        """
        Bind a checkout session id to an order.

        Only fills an empty slot on an unpaid order; the bound id never
        changes afterwards.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderValidationError: If the order is paid or already bound
            PersistenceError: If the store write fails
        """
        try:
            async with self.session_factory.begin() as db:
                result = await db.execute(
                    update(OrderRecord)
                    .where(
                        OrderRecord.order_id == order_id,
                        OrderRecord.external_session_id.is_(None),
                        OrderRecord.payment_status.in_(_UNSETTLED),
                    )
                    .values(external_session_id=session_id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                attached = result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(
                "session_attach_failed", order_id=order_id, session_id=session_id, error=str(e)
            )
            raise PersistenceError("Failed to save checkout session")

        order = await self.get_order(order_id)
        if not attached:
            logger.warning(
                "session_attach_rejected",
                order_id=order_id,
                session_id=session_id,
                bound_session_id=order.external_session_id,
                payment_status=order.payment_status.value,
            )
            raise OrderValidationError("Checkout session already created for this order")

        logger.info("session_attached", order_id=order_id, session_id=session_id)
        return order

    async def mark_paid(
        self,
        order_id: str,
        session_id: str,
        actual_price: float,
        payment_intent_id: Optional[str] = None,
    ) -> Tuple[OrderSummary, bool]:
        """
        Transition an unsettled order bound to session_id to paid.

        Compare-and-set on (payment_status unsettled, session bound): of any
        number of concurrent callers exactly one transitions.

        Returns:
            Tuple of (current order, whether this call made the transition)
        """
        now = utcnow()
        return await self._transition(
            order_id,
            session_id,
            reason="paid",
            values={
                "payment_status": PaymentStatus.PAID.value,
                "order_status": OrderStatus.CONFIRMED.value,
                "actual_price": actual_price,
                "external_payment_id": payment_intent_id,
                "payment_completed_at": now,
                "updated_at": now,
            },
        )

    async def mark_failed(
        self, order_id: str, session_id: str, reason: str
    ) -> Tuple[OrderSummary, bool]:
        """Transition an unsettled order bound to session_id to failed/cancelled."""
        return await self._transition(
            order_id,
            session_id,
            reason="failed",
            values=_failed_values(reason),
        )

    async def abandon_unbound(self, order_id: str, reason: str) -> Tuple[OrderSummary, bool]:
        """
        Fail and cancel an unsettled order that never got a checkout session.

        Used when session creation fails after the order was committed; a
        concurrent attach wins and leaves the order untouched.
        """
        return await self._transition(
            order_id,
            None,
            reason="failed",
            values=_failed_values(reason),
        )

    async def _transition(
        self, order_id: str, session_id: Optional[str], reason: str, values: Dict[str, Any]
    ) -> Tuple[OrderSummary, bool]:
        event: Optional[IndexMirrorEvent] = None
        # No session id means the order must still be unbound
        bound_condition = (
            OrderRecord.external_session_id == session_id
            if session_id is not None
            else OrderRecord.external_session_id.is_(None)
        )
        try:
            async with self.session_factory.begin() as db:
                owner_id = (
                    await db.execute(
                        select(OrderRecord.owner_id).where(OrderRecord.order_id == order_id)
                    )
                ).first()
                if owner_id is None:
                    raise OrderNotFoundError()

                result = await db.execute(
                    update(OrderRecord)
                    .where(
                        OrderRecord.order_id == order_id,
                        OrderRecord.payment_status.in_(_UNSETTLED),
                        bound_condition,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                transitioned = result.rowcount == 1

                if transitioned and owner_id[0]:
                    event = self._mirror_event(order_id, owner_id[0], reason)
                    db.add(event)
        except SQLAlchemyError as e:
            logger.error(
                "payment_transition_failed",
                order_id=order_id,
                session_id=session_id,
                transition=reason,
                error=str(e),
            )
            raise PersistenceError("Failed to update order")

        logger.info(
            "payment_transition",
            order_id=order_id,
            session_id=session_id,
            transition=reason,
            applied=transitioned,
        )

        if event is not None:
            await self.mirror.apply(event.id)

        return await self.get_order(order_id), transitioned

    @staticmethod
    def _mirror_event(order_id: str, owner_id: str, reason: str) -> IndexMirrorEvent:
        return IndexMirrorEvent(
            order_id=order_id,
            owner_id=owner_id,
            reason=reason,
            applied=False,
            attempts=0,
            created_at=utcnow(),
        )


def _failed_values(reason: str) -> Dict[str, Any]:
    return {
        "payment_status": PaymentStatus.FAILED.value,
        "order_status": OrderStatus.CANCELLED.value,
        "failure_reason": reason,
        "updated_at": utcnow(),
    }


def _index_summary(entry: UserOrderEntry) -> IndexEntrySummary:
    return IndexEntrySummary(
        order_id=entry.order_id,
        service_type=entry.service_type,
        service_title=entry.service_title,
        estimated_price=entry.estimated_price,
        payment_method=entry.payment_method,
        order_status=entry.order_status,
        payment_status=entry.payment_status,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )
