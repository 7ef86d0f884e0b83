"""Dispute model."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import BigInteger, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DisputeParty(str, PyEnum):
    BUYER = "BUYER"
    SELLER = "SELLER"


class DisputeReason(str, PyEnum):
    """Reasons offered on the dispute form."""

    NOT_RECEIVED = "NOT_RECEIVED"
    CREDENTIALS_INVALID = "CREDENTIALS_INVALID"
    ACCOUNT_RECALLED = "ACCOUNT_RECALLED"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    OTHER = "OTHER"


class DisputeStatus(str, PyEnum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class DisputeResolution(str, PyEnum):
    REFUND_BUYER = "REFUND_BUYER"
    RELEASE_SELLER = "RELEASE_SELLER"
    SPLIT = "SPLIT"


class DisputePriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class Dispute(Base):
    """A contested order. At most one dispute exists per order."""

    __tablename__ = "disputes"
    __table_args__ = (
        Index("ix_disputes_status", "status"),
        Index("ix_disputes_assigned_agent", "assigned_agent"),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, unique=True)
    raised_by: Mapped[DisputeParty] = mapped_column(SqlEnum(DisputeParty, name="dispute_party"), nullable=False)
    raised_by_user: Mapped[str] = mapped_column(String(64), nullable=False)
    reason_code: Mapped[DisputeReason] = mapped_column(SqlEnum(DisputeReason, name="dispute_reason"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_refs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[DisputeStatus] = mapped_column(
        SqlEnum(DisputeStatus, name="dispute_status"), nullable=False, default=DisputeStatus.OPEN
    )
    priority: Mapped[DisputePriority] = mapped_column(
        SqlEnum(DisputePriority, name="dispute_priority"), nullable=False, default=DisputePriority.MEDIUM
    )
    resolution: Mapped[DisputeResolution | None] = mapped_column(
        SqlEnum(DisputeResolution, name="dispute_resolution"), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_agent: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
