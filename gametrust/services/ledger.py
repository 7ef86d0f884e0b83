"""Escrow ledger: the append-only record of where each order's money is.

Every fund movement goes through two steps:

1. :func:`record_intent` stages a ``SettlementIntent`` inside the caller's
   transaction (alongside the order transition that requires it).
2. :func:`execute_intent`, run after that transaction commits, calls the
   payment gateway with retries and, once the gateway confirms, appends the
   ``EscrowLedgerEntry``.

Idempotency keys are shared between the intent, the gateway call and the
ledger entry, so a retried step never moves or records funds twice.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gametrust.config import get_settings
from gametrust.models.ledger import (
    OUTFLOW_KINDS,
    EscrowLedgerEntry,
    IntentStatus,
    LedgerEntryKind,
    SettlementIntent,
)
from gametrust.models.order import Order
from gametrust.services.idempotency import get_existing_by_key
from gametrust.services.payment_gateway import PaymentGateway, get_payment_gateway
from gametrust.utils.errors import NotFoundError, PaymentProviderError, StateConflictError, ValidationError
from gametrust.utils.time import utcnow

logger = logging.getLogger(__name__)

# Patched in tests to skip real backoff waits.
_sleep = time.sleep


@dataclass(frozen=True)
class LedgerBalance:
    held: int
    released: int
    refunded: int

    @property
    def remaining(self) -> int:
        return self.held - self.released - self.refunded


def derive_idempotency_key(order_id: int, kind: LedgerEntryKind) -> str:
    return f"order:{order_id}:{kind.value}"


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Exponential backoff: ``base * 2**(attempt-1)`` seconds, capped."""

    return min(cap, base * (2 ** (attempt - 1)))


def entries(db: Session, order_id: int) -> list[EscrowLedgerEntry]:
    stmt = (
        select(EscrowLedgerEntry)
        .where(EscrowLedgerEntry.order_id == order_id)
        .order_by(EscrowLedgerEntry.created_at, EscrowLedgerEntry.id)
    )
    return list(db.scalars(stmt))


def _posted_totals(db: Session, order_id: int) -> dict[LedgerEntryKind, int]:
    stmt = (
        select(EscrowLedgerEntry.kind, func.coalesce(func.sum(EscrowLedgerEntry.amount), 0))
        .where(EscrowLedgerEntry.order_id == order_id)
        .group_by(EscrowLedgerEntry.kind)
    )
    return {kind: int(total) for kind, total in db.execute(stmt)}


def balance(db: Session, order_id: int) -> LedgerBalance:
    totals = _posted_totals(db, order_id)
    return LedgerBalance(
        held=totals.get(LedgerEntryKind.HOLD, 0),
        released=totals.get(LedgerEntryKind.RELEASE, 0),
        refunded=totals.get(LedgerEntryKind.REFUND, 0) + totals.get(LedgerEntryKind.PARTIAL_REFUND, 0),
    )


def _committed_outflows(db: Session, order_id: int) -> int:
    """Outflows requested but not yet posted (pending, or failed awaiting retry)."""

    stmt = select(func.coalesce(func.sum(SettlementIntent.amount), 0)).where(
        SettlementIntent.order_id == order_id,
        SettlementIntent.kind.in_(OUTFLOW_KINDS),
        SettlementIntent.status.in_((IntentStatus.PENDING, IntentStatus.FAILED)),
    )
    return int(db.scalar(stmt) or 0)


def _hold_entry(db: Session, order_id: int) -> EscrowLedgerEntry | None:
    stmt = select(EscrowLedgerEntry).where(
        EscrowLedgerEntry.order_id == order_id,
        EscrowLedgerEntry.kind == LedgerEntryKind.HOLD,
    )
    return db.scalars(stmt).first()


def has_hold(db: Session, order_id: int) -> bool:
    return _hold_entry(db, order_id) is not None


def hold_declined(db: Session, order_id: int) -> bool:
    stmt = select(SettlementIntent.id).where(
        SettlementIntent.order_id == order_id,
        SettlementIntent.kind == LedgerEntryKind.HOLD,
        SettlementIntent.status == IntentStatus.DECLINED,
    )
    return db.scalar(stmt) is not None


def open_intents(db: Session, order_id: int) -> list[SettlementIntent]:
    stmt = (
        select(SettlementIntent)
        .where(SettlementIntent.order_id == order_id, SettlementIntent.status == IntentStatus.PENDING)
        .order_by(SettlementIntent.id)
    )
    return list(db.scalars(stmt))


def failed_intents(db: Session, order_id: int) -> list[SettlementIntent]:
    stmt = (
        select(SettlementIntent)
        .where(SettlementIntent.order_id == order_id, SettlementIntent.status == IntentStatus.FAILED)
        .order_by(SettlementIntent.id)
    )
    return list(db.scalars(stmt))


def has_unsettled_intents(db: Session, order_id: int) -> bool:
    stmt = select(SettlementIntent.id).where(
        SettlementIntent.order_id == order_id,
        SettlementIntent.status.in_((IntentStatus.PENDING, IntentStatus.FAILED)),
    )
    return db.scalar(stmt.limit(1)) is not None


def record_intent(
    db: Session,
    order: Order,
    kind: LedgerEntryKind,
    amount: int | None = None,
    *,
    idempotency_key: str | None = None,
) -> SettlementIntent:
    """Stage a fund movement for ``order`` in the current transaction.

    ``RELEASE`` and ``REFUND`` settle the unsettled remainder of the hold;
    ``PARTIAL_REFUND`` must leave part of it behind. The caller commits.
    """

    key = idempotency_key or derive_idempotency_key(order.id, kind)
    existing = get_existing_by_key(db, SettlementIntent, key)
    if existing is not None:
        return existing

    if kind == LedgerEntryKind.HOLD:
        if has_hold(db, order.id):
            raise StateConflictError("Order already has a hold.", code="HOLD_EXISTS", details={"order_id": order.id})
        amount = order.amount if amount is None else amount
        if amount <= 0:
            raise ValidationError("Hold amount must be positive.", details={"amount": amount})
    else:
        totals = balance(db, order.id)
        if totals.held == 0:
            raise StateConflictError(
                "No hold to settle against.", code="NO_HOLD", details={"order_id": order.id, "kind": kind.value}
            )
        available = totals.remaining - _committed_outflows(db, order.id)
        if available <= 0:
            raise StateConflictError(
                "Hold is already fully settled.", code="ALREADY_SETTLED", details={"order_id": order.id}
            )
        if kind == LedgerEntryKind.PARTIAL_REFUND:
            if amount is None or not 0 < amount < available:
                raise ValidationError(
                    "Partial refund must be positive and less than the unsettled amount.",
                    details={"amount": amount, "available": available},
                )
        elif amount is None:
            amount = available
        elif amount != available:
            raise ValidationError(
                f"{kind.value} must cover the unsettled amount; use a partial refund for less.",
                details={"amount": amount, "available": available},
            )

    intent = SettlementIntent(
        order_id=order.id,
        kind=kind,
        amount=amount,
        idempotency_key=key,
        status=IntentStatus.PENDING,
        attempts=0,
    )
    db.add(intent)
    db.flush()
    logger.info(
        "Settlement intent recorded",
        extra={"order_id": order.id, "kind": kind.value, "amount": amount, "intent_id": intent.id},
    )
    return intent


def _check_guard(db: Session, intent: SettlementIntent) -> None:
    """Refuse a posting that would break conservation of the hold."""

    if intent.kind == LedgerEntryKind.HOLD:
        if has_hold(db, intent.order_id):
            raise StateConflictError("Order already has a hold.", code="HOLD_EXISTS")
        return
    totals = balance(db, intent.order_id)
    if totals.held == 0:
        raise StateConflictError("No hold to settle against.", code="NO_HOLD")
    if intent.amount > totals.remaining:
        raise StateConflictError(
            "Settlement exceeds the unsettled hold.",
            code="ALREADY_SETTLED",
            details={"amount": intent.amount, "remaining": totals.remaining},
        )


def _call_gateway(
    gateway: PaymentGateway,
    intent: SettlementIntent,
    order: Order,
    hold_ref: str | None,
) -> str | None:
    """Perform one gateway call. Returns the external reference, or ``None`` for a declined hold."""

    if intent.kind == LedgerEntryKind.HOLD:
        result = gateway.hold(order.buyer_id, intent.amount, idempotency_key=intent.idempotency_key)
        if not result.ok:
            return None
        if not result.external_ref:
            raise PaymentProviderError("Gateway confirmed a hold without a reference.", transient=False)
        return result.external_ref

    if hold_ref is None:
        raise StateConflictError(
            "No hold to settle against.", code="NO_HOLD", details={"order_id": order.id, "kind": intent.kind.value}
        )
    if intent.kind == LedgerEntryKind.RELEASE:
        ok = gateway.release(
            hold_ref, intent.amount, payee_id=order.seller_id, idempotency_key=intent.idempotency_key
        )
    else:
        ok = gateway.refund(hold_ref, intent.amount, idempotency_key=intent.idempotency_key)
    if not ok:
        raise PaymentProviderError(f"Gateway did not confirm {intent.kind.value}.", transient=False)
    return hold_ref


def _post_entry(db: Session, intent: SettlementIntent, external_ref: str) -> EscrowLedgerEntry:
    intent_id = intent.id
    try:
        _check_guard(db, intent)
        entry = EscrowLedgerEntry(
            order_id=intent.order_id,
            kind=intent.kind,
            amount=intent.amount,
            external_ref=external_ref,
            idempotency_key=intent.idempotency_key,
        )
        db.add(entry)
        intent.status = IntentStatus.CONFIRMED
        intent.confirmed_at = utcnow()
        intent.last_error = None
        db.commit()
    except StateConflictError:
        db.rollback()
        logger.error(
            "Gateway confirmed a movement the ledger refuses to post",
            extra={"intent_id": intent_id, "order_id": intent.order_id, "kind": intent.kind.value},
        )
        raise
    except IntegrityError:
        # Another worker posted the same key first.
        db.rollback()
        entry = get_existing_by_key(db, EscrowLedgerEntry, intent.idempotency_key)
        if entry is None:
            raise
        intent = db.get(SettlementIntent, intent_id)
        intent.status = IntentStatus.CONFIRMED
        intent.confirmed_at = intent.confirmed_at or utcnow()
        db.commit()
        return entry

    db.refresh(entry)
    logger.info(
        "Ledger entry posted",
        extra={"order_id": entry.order_id, "kind": entry.kind.value, "amount": entry.amount, "entry_id": entry.id},
    )
    return entry


def execute_intent(
    db: Session,
    intent: SettlementIntent,
    *,
    gateway: PaymentGateway | None = None,
) -> EscrowLedgerEntry | None:
    """Drive one intent through the gateway and post its ledger entry.

    Returns the posted entry, or ``None`` when the gateway declined a hold.
    Raises ``PaymentProviderError`` once the intent has been marked FAILED.
    """

    existing = get_existing_by_key(db, EscrowLedgerEntry, intent.idempotency_key)
    if existing is not None:
        if intent.status != IntentStatus.CONFIRMED:
            intent.status = IntentStatus.CONFIRMED
            intent.confirmed_at = utcnow()
            db.commit()
        return existing
    if intent.status == IntentStatus.DECLINED:
        return None

    order = db.get(Order, intent.order_id)
    if order is None:
        raise NotFoundError("Order not found.", details={"order_id": intent.order_id})

    hold_ref = None
    if intent.kind != LedgerEntryKind.HOLD:
        hold = _hold_entry(db, order.id)
        if hold is None:
            raise StateConflictError("No hold to settle against.", code="NO_HOLD")
        hold_ref = hold.external_ref
    _check_guard(db, intent)

    gateway = gateway or get_payment_gateway()
    settings = get_settings()
    max_attempts = max(1, settings.PAYMENT_RETRY_MAX_ATTEMPTS)
    attempt = 0
    while True:
        attempt += 1
        intent.attempts = (intent.attempts or 0) + 1
        try:
            external_ref = _call_gateway(gateway, intent, order, hold_ref)
            break
        except PaymentProviderError as exc:
            intent.last_error = str(exc)[:255]
            if not exc.transient or attempt >= max_attempts:
                intent.status = IntentStatus.FAILED
                db.commit()
                logger.error(
                    "Settlement failed",
                    extra={
                        "order_id": order.id,
                        "kind": intent.kind.value,
                        "attempt": attempt,
                        "transient": exc.transient,
                        "error": str(exc),
                    },
                )
                raise
            delay = backoff_delay(
                attempt, base=settings.PAYMENT_RETRY_BASE_SECONDS, cap=settings.PAYMENT_RETRY_MAX_SECONDS
            )
            db.commit()
            logger.warning(
                "Transient gateway failure; retrying",
                extra={"order_id": order.id, "kind": intent.kind.value, "attempt": attempt, "delay": delay},
            )
            _sleep(delay)

    if external_ref is None:
        intent.status = IntentStatus.DECLINED
        intent.last_error = "declined"
        db.commit()
        logger.info("Hold declined", extra={"order_id": order.id, "amount": intent.amount})
        return None

    return _post_entry(db, intent, external_ref)


def _run(
    db: Session,
    order_id: int,
    kind: LedgerEntryKind,
    amount: int | None,
    idempotency_key: str | None,
    gateway: PaymentGateway | None,
) -> EscrowLedgerEntry | None:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found.", details={"order_id": order_id})
    try:
        intent = record_intent(db, order, kind, amount, idempotency_key=idempotency_key)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return execute_intent(db, intent, gateway=gateway)


def hold(
    db: Session,
    order_id: int,
    amount: int,
    *,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> EscrowLedgerEntry | None:
    """Capture ``amount`` from the buyer. ``None`` means the gateway declined."""

    return _run(db, order_id, LedgerEntryKind.HOLD, amount, idempotency_key, gateway)


def release(
    db: Session,
    order_id: int,
    *,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> EscrowLedgerEntry:
    """Pay the unsettled remainder of the hold out to the seller."""

    return _run(db, order_id, LedgerEntryKind.RELEASE, None, idempotency_key, gateway)


def refund(
    db: Session,
    order_id: int,
    amount: int | None = None,
    *,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> EscrowLedgerEntry:
    """Return the unsettled remainder of the hold to the buyer."""

    return _run(db, order_id, LedgerEntryKind.REFUND, amount, idempotency_key, gateway)


def partial_refund(
    db: Session,
    order_id: int,
    amount: int,
    *,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> EscrowLedgerEntry:
    return _run(db, order_id, LedgerEntryKind.PARTIAL_REFUND, amount, idempotency_key, gateway)


__all__ = [
    "LedgerBalance",
    "backoff_delay",
    "balance",
    "derive_idempotency_key",
    "entries",
    "execute_intent",
    "failed_intents",
    "has_hold",
    "has_unsettled_intents",
    "hold",
    "hold_declined",
    "open_intents",
    "partial_refund",
    "record_intent",
    "refund",
    "release",
]
