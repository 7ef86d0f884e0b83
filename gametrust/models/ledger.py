"""Escrow ledger models: immutable fund movements and their settlement intents."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LedgerEntryKind(str, PyEnum):
    HOLD = "HOLD"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"


OUTFLOW_KINDS = frozenset({LedgerEntryKind.RELEASE, LedgerEntryKind.REFUND, LedgerEntryKind.PARTIAL_REFUND})


class IntentStatus(str, PyEnum):
    """Lifecycle of a requested fund movement."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    FAILED = "FAILED"


class EscrowLedgerEntry(Base):
    """One confirmed fund movement. Rows are append-only."""

    __tablename__ = "escrow_ledger"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        Index("ix_escrow_ledger_order_kind", "order_id", "kind"),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    kind: Mapped[LedgerEntryKind] = mapped_column(SqlEnum(LedgerEntryKind, name="ledger_entry_kind"), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    external_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)


@event.listens_for(EscrowLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target: EscrowLedgerEntry) -> None:
    raise RuntimeError(f"Ledger entry {target.id} is immutable; post a correcting entry instead.")


class SettlementIntent(Base):
    """Durable record written before the payment gateway is called."""

    __tablename__ = "settlement_intents"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        Index("ix_settlement_intents_status", "status"),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    kind: Mapped[LedgerEntryKind] = mapped_column(SqlEnum(LedgerEntryKind, name="intent_kind"), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    status: Mapped[IntentStatus] = mapped_column(
        SqlEnum(IntentStatus, name="intent_status"), nullable=False, default=IntentStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
