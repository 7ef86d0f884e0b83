"""Order model: one sale transaction and its lifecycle status."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum as SqlEnum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OrderStatus(str, PyEnum):
    """Canonical order lifecycle states."""

    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    IN_ESCROW = "IN_ESCROW"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    ESCALATED = "ESCALATED"
    RESOLVED_REFUND = "RESOLVED_REFUND"
    RESOLVED_RELEASE = "RESOLVED_RELEASE"


TERMINAL_ORDER_STATUSES = frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.RESOLVED_REFUND,
        OrderStatus.RESOLVED_RELEASE,
    }
)

# ``dispute_id`` is set exactly when the order is in one of these states.
DISPUTE_LINKED_STATUSES = frozenset(
    {
        OrderStatus.DISPUTED,
        OrderStatus.ESCALATED,
        OrderStatus.RESOLVED_REFUND,
        OrderStatus.RESOLVED_RELEASE,
    }
)


class SettlementStatus(str, PyEnum):
    """Where the order's money movements stand with the payment gateway."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED_SETTLEMENT = "FAILED_SETTLEMENT"


class Order(Base):
    """A buyer's purchase of a listing, held in escrow until settled."""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("buyer_id <> seller_id", name="distinct_parties"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_settlement_status", "settlement_status"),
    )

    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SqlEnum(OrderStatus, name="order_status"), nullable=False, default=OrderStatus.AWAITING_PAYMENT
    )
    settlement_status: Mapped[SettlementStatus | None] = mapped_column(
        SqlEnum(SettlementStatus, name="settlement_status"), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES
