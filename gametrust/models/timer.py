"""Durable deadline timers."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class TimerPurpose(str, PyEnum):
    AUTO_CONFIRM = "AUTO_CONFIRM"
    DISPUTE_SLA_ESCALATE = "DISPUTE_SLA_ESCALATE"


class ScheduledTimer(Base):
    """A persisted deadline; deleted once fired and processed."""

    __tablename__ = "scheduled_timers"
    __table_args__ = (
        Index("ix_scheduled_timers_fire_at", "fire_at"),
        # At most one active timer per (order, purpose).
        Index(
            "uq_scheduled_timers_active",
            "order_id",
            "purpose",
            unique=True,
            sqlite_where=text("cancelled = 0"),
            postgresql_where=text("cancelled IS FALSE"),
        ),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    purpose: Mapped[TimerPurpose] = mapped_column(SqlEnum(TimerPurpose, name="timer_purpose"), nullable=False)
    fire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
