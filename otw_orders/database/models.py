"""SQLAlchemy database models for the OTW order store."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")

Price = Numeric(12, 2, asdecimal=False)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """
    Primary order records table.

    One row per order. Service details and customer info are stored as
    JSON documents exactly as validated at the boundary.
    """

    __tablename__ = "otw_orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    service_details: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    customer_info: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    order_status: Mapped[str] = mapped_column(String(20), nullable=False)
    estimated_price: Mapped[float] = mapped_column(Price, nullable=False)
    actual_price: Mapped[float | None] = mapped_column(Price, nullable=True)
    external_session_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Sweep cursor; unlike updated_at it moves every time the session is checked
    last_reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    assigned_helper: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[List[Any]] = mapped_column(JSONDocument, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    request_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint("estimated_price >= 0", name="non_negative_estimated_price"),
        CheckConstraint(
            "service_type IN ('grocery', 'rides', 'package')",
            name="valid_service_type",
        ),
        CheckConstraint(
            "payment_method IN ('contact', 'card')",
            name="valid_payment_method",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'paid', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "order_status IN ('pending_payment', 'pending', 'confirmed', 'preparing', "
            "'ready', 'delivered', 'cancelled')",
            name="valid_order_status",
        ),
        Index("idx_otw_orders_created_desc", "created_at", postgresql_ops={"created_at": "DESC"}),
        Index(
            "idx_otw_orders_unsettled_sessions",
            "payment_status",
            "last_reconciled_at",
            "updated_at",
        ),
    )

    def __repr__(self) -> str:
        """String representation of OrderRecord."""
        return (
            f"<OrderRecord(order_id={self.order_id}, owner_id={self.owner_id}, "
            f"payment_status={self.payment_status}, order_status={self.order_status})>"
        )


class UserOrderEntry(Base):
    """
    Per-identity order index.

    Denormalized projection of OrderRecord for fast "my orders" reads.
    Maintained through IndexMirrorEvent rows, so it may briefly lag the
    primary record.
    """

    __tablename__ = "user_otw_orders"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    service_title: Mapped[str] = mapped_column(String(255), nullable=False)
    estimated_price: Mapped[float] = mapped_column(Price, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    order_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_user_otw_orders_owner_created", "owner_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of UserOrderEntry."""
        return (
            f"<UserOrderEntry(owner_id={self.owner_id}, order_id={self.order_id}, "
            f"order_status={self.order_status})>"
        )


class IndexMirrorEvent(Base):
    """
    Outbox of pending index mirror writes.

    Written in the same transaction as the primary order change, then
    applied right away or by the mirror worker. Applying re-projects the
    current primary record, so replays are harmless.
    """

    __tablename__ = "index_mirror_outbox"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_index_mirror_pending",
            "applied",
            "created_at",
            postgresql_where=text("NOT applied"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of IndexMirrorEvent."""
        return (
            f"<IndexMirrorEvent(id={self.id}, order_id={self.order_id}, "
            f"applied={self.applied}, attempts={self.attempts})>"
        )
