"""Order state machine: the lifecycle of one sale and the settlement it triggers."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from gametrust.config import get_settings
from gametrust.models.audit import AuditLog
from gametrust.models.dispute import Dispute, DisputeStatus
from gametrust.models.ledger import IntentStatus, LedgerEntryKind, SettlementIntent
from gametrust.models.order import Order, OrderStatus, SettlementStatus
from gametrust.models.timer import TimerPurpose
from gametrust.schemas.order import OrderCreate
from gametrust.security import CurrentUser
from gametrust.services import alerts, deadlines, ledger
from gametrust.services.idempotency import get_existing_by_key
from gametrust.services.notifications import emit
from gametrust.services.payment_gateway import PaymentGateway
from gametrust.utils.audit import log_audit
from gametrust.utils.errors import (
    NotFoundError,
    PaymentProviderError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from gametrust.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYS"


class OrderEvent(str, Enum):
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    MARK_DELIVERED = "MARK_DELIVERED"
    BUYER_CONFIRM = "BUYER_CONFIRM"
    AUTO_CONFIRM = "AUTO_CONFIRM"
    RAISE_DISPUTE = "RAISE_DISPUTE"
    RESOLVE_REFUND = "RESOLVE_REFUND"
    RESOLVE_RELEASE = "RESOLVE_RELEASE"
    SLA_BREACH = "SLA_BREACH"


TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.PAYMENT_CAPTURED): OrderStatus.IN_ESCROW,
    (OrderStatus.AWAITING_PAYMENT, OrderEvent.PAYMENT_FAILED): OrderStatus.CANCELLED,
    (OrderStatus.IN_ESCROW, OrderEvent.MARK_DELIVERED): OrderStatus.DELIVERED,
    (OrderStatus.DELIVERED, OrderEvent.BUYER_CONFIRM): OrderStatus.COMPLETED,
    (OrderStatus.DELIVERED, OrderEvent.AUTO_CONFIRM): OrderStatus.COMPLETED,
    (OrderStatus.IN_ESCROW, OrderEvent.RAISE_DISPUTE): OrderStatus.DISPUTED,
    (OrderStatus.DELIVERED, OrderEvent.RAISE_DISPUTE): OrderStatus.DISPUTED,
    (OrderStatus.DISPUTED, OrderEvent.RESOLVE_REFUND): OrderStatus.RESOLVED_REFUND,
    (OrderStatus.DISPUTED, OrderEvent.RESOLVE_RELEASE): OrderStatus.RESOLVED_RELEASE,
    (OrderStatus.DISPUTED, OrderEvent.SLA_BREACH): OrderStatus.ESCALATED,
    (OrderStatus.ESCALATED, OrderEvent.RESOLVE_REFUND): OrderStatus.RESOLVED_REFUND,
    (OrderStatus.ESCALATED, OrderEvent.RESOLVE_RELEASE): OrderStatus.RESOLVED_RELEASE,
}


def next_status(current: OrderStatus, event: OrderEvent) -> OrderStatus:
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise StateConflictError(
            f"Cannot apply {event.value} to an order in {current.value}.",
            code="INVALID_TRANSITION",
            details={"status": current.value, "event": event.value},
        ) from None


def apply_transition(
    db: Session,
    order: Order,
    event: OrderEvent,
    *,
    expected_version: int | None,
    actor: str,
    data: dict[str, Any] | None = None,
) -> OrderStatus:
    """Move ``order`` along the state graph in memory and stage the audit row.

    The caller's ``expected_version`` is compared here; the database repeats
    the comparison when the UPDATE is flushed.
    """

    if expected_version is not None and expected_version != order.version:
        raise StateConflictError(
            "Order was modified since it was read.",
            code="VERSION_CONFLICT",
            details={"expected_version": expected_version, "current_version": order.version},
        )
    target = next_status(order.status, event)
    previous = order.status
    order.status = target
    log_audit(
        db,
        actor=actor,
        action=f"ORDER_{event.value}",
        entity="Order",
        entity_id=order.id,
        data={"from": previous.value, "to": target.value, **(data or {})},
    )
    return previous


@contextmanager
def versioned_commit(db: Session, order: Order) -> Iterator[None]:
    """Commit the enclosed changes, mapping a lost version race to ``StateConflictError``."""

    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise StateConflictError(
            "Order was modified concurrently.",
            code="VERSION_CONFLICT",
            details={"order_id": order.id},
        ) from exc
    except Exception:
        db.rollback()
        raise


def _get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found.", details={"order_id": order_id})
    return order


def _ensure_can_view(order: Order, actor: CurrentUser) -> None:
    if actor.is_staff or actor.id in {order.buyer_id, order.seller_id}:
        return
    raise PermissionDeniedError("Not a party to this order.")


def create_order(
    db: Session,
    payload: OrderCreate,
    *,
    buyer: CurrentUser,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> Order:
    """Create an order at checkout and place the escrow hold."""

    if payload.seller_id == buyer.id:
        raise ValidationError("Buyer and seller must differ.", code="SELF_PURCHASE")

    existing = get_existing_by_key(db, Order, idempotency_key)
    if existing is not None:
        if existing.buyer_id != buyer.id:
            raise StateConflictError("Idempotency-Key already used.", code="IDEMPOTENCY_KEY_REUSED")
        logger.info("Order create replayed", extra={"order_id": existing.id})
        return existing

    order = Order(
        buyer_id=buyer.id,
        seller_id=payload.seller_id,
        listing_id=payload.listing_id,
        amount=payload.amount,
        status=OrderStatus.AWAITING_PAYMENT,
        settlement_status=SettlementStatus.PENDING,
        idempotency_key=idempotency_key,
    )
    try:
        db.add(order)
        db.flush()
        ledger.record_intent(db, order, LedgerEntryKind.HOLD, order.amount)
        log_audit(
            db,
            actor=buyer.id,
            action="ORDER_CREATED",
            entity="Order",
            entity_id=order.id,
            data={
                "seller_id": order.seller_id,
                "listing_id": order.listing_id,
                "amount": order.amount,
            },
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_existing_by_key(db, Order, idempotency_key)
        if existing is None:
            raise
        return existing

    db.refresh(order)
    logger.info("Order created", extra={"order_id": order.id, "amount": order.amount})
    emit("order.created", order_id=order.id, actor=buyer.id, amount=order.amount, status=order.status.value)
    return settle(db, order, gateway=gateway)


def _flag_failed_settlement(
    db: Session,
    order: Order,
    intent: SettlementIntent,
    exc: PaymentProviderError,
) -> Order:
    with versioned_commit(db, order):
        order.settlement_status = SettlementStatus.FAILED_SETTLEMENT
        log_audit(
            db,
            actor=SYSTEM_ACTOR,
            action="SETTLEMENT_FAILED",
            entity="Order",
            entity_id=order.id,
            data={"kind": intent.kind.value, "amount": intent.amount, "attempts": intent.attempts},
        )
    alerts.create_alert(
        db,
        alert_type="SETTLEMENT_FAILED",
        message=f"Settlement {intent.kind.value} failed for order {order.id}",
        order_id=order.id,
        payload={
            "intent_id": intent.id,
            "kind": intent.kind.value,
            "amount": intent.amount,
            "attempts": intent.attempts,
            "error": str(exc),
        },
    )
    emit("settlement.failed", order_id=order.id, kind=intent.kind.value, amount=intent.amount, error=str(exc))
    return order


def settle(db: Session, order: Order, *, gateway: PaymentGateway | None = None) -> Order:
    """Execute the order's pending intents and apply what the gateway decided.

    Gateway failures flag the order ``FAILED_SETTLEMENT`` and are not raised.
    """

    for intent in ledger.open_intents(db, order.id):
        try:
            ledger.execute_intent(db, intent, gateway=gateway)
        except PaymentProviderError as exc:
            return _flag_failed_settlement(db, order, intent, exc)

    if order.status == OrderStatus.AWAITING_PAYMENT:
        if ledger.has_hold(db, order.id):
            event, settlement = OrderEvent.PAYMENT_CAPTURED, SettlementStatus.CONFIRMED
        elif ledger.hold_declined(db, order.id):
            event, settlement = OrderEvent.PAYMENT_FAILED, None
        else:
            return order
        with versioned_commit(db, order):
            apply_transition(db, order, event, expected_version=None, actor=SYSTEM_ACTOR)
            order.settlement_status = settlement
        if event == OrderEvent.PAYMENT_CAPTURED:
            emit("order.payment_captured", order_id=order.id, amount=order.amount, status=order.status.value)
        else:
            emit("order.cancelled", order_id=order.id, reason="payment_declined", status=order.status.value)
        return order

    if order.settlement_status == SettlementStatus.CONFIRMED or ledger.has_unsettled_intents(db, order.id):
        return order

    closed: Dispute | None = None
    with versioned_commit(db, order):
        order.settlement_status = SettlementStatus.CONFIRMED
        if order.dispute_id is not None:
            dispute = db.get(Dispute, order.dispute_id)
            if dispute is not None and dispute.status == DisputeStatus.RESOLVED:
                dispute.status = DisputeStatus.CLOSED
                dispute.closed_at = utcnow()
                closed = dispute
    totals = ledger.balance(db, order.id)
    emit(
        "settlement.confirmed",
        order_id=order.id,
        status=order.status.value,
        released=totals.released,
        refunded=totals.refunded,
    )
    if closed is not None:
        emit("dispute.closed", order_id=order.id, dispute_id=closed.id, resolution=closed.resolution.value)
    return order


def _with_note(data: dict[str, Any], note: str | None) -> dict[str, Any]:
    note = (note or "").strip()
    if note:
        data["note"] = note
    return data


def mark_delivered(
    db: Session,
    order_id: int,
    *,
    actor: CurrentUser,
    expected_version: int,
    note: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Seller hands over the account; arms the auto-confirm deadline.

    ``note`` is the seller's hand-over message; it is kept on the timeline.
    """

    order = _get_order(db, order_id)
    if actor.id != order.seller_id:
        raise PermissionDeniedError("Only the seller can mark an order delivered.")

    now = now or utcnow()
    deadline = now + timedelta(hours=get_settings().AUTO_CONFIRM_HOURS)
    with versioned_commit(db, order):
        apply_transition(
            db,
            order,
            OrderEvent.MARK_DELIVERED,
            expected_version=expected_version,
            actor=actor.id,
            data=_with_note({"delivery_deadline": deadline.isoformat()}, note),
        )
        order.delivered_at = now
        order.delivery_deadline = deadline
        deadlines.schedule(db, order.id, TimerPurpose.AUTO_CONFIRM, deadline)

    emit(
        "order.delivered",
        order_id=order.id,
        actor=actor.id,
        status=order.status.value,
        delivery_deadline=deadline.isoformat(),
    )
    return order


def _complete(
    db: Session,
    order: Order,
    event: OrderEvent,
    *,
    actor: str,
    expected_version: int,
    gateway: PaymentGateway | None,
    note: str | None = None,
) -> Order:
    with versioned_commit(db, order):
        apply_transition(db, order, event, expected_version=expected_version, actor=actor, data=_with_note({}, note))
        deadlines.cancel(db, order.id, TimerPurpose.AUTO_CONFIRM)
        ledger.record_intent(db, order, LedgerEntryKind.RELEASE)
        order.settlement_status = SettlementStatus.PENDING

    emit("order.completed", order_id=order.id, actor=actor, status=order.status.value, via=event.value)
    return settle(db, order, gateway=gateway)


def confirm_delivery(
    db: Session,
    order_id: int,
    *,
    actor: CurrentUser,
    expected_version: int,
    gateway: PaymentGateway | None = None,
    note: str | None = None,
) -> Order:
    order = _get_order(db, order_id)
    if actor.id != order.buyer_id:
        raise PermissionDeniedError("Only the buyer can confirm delivery.")
    return _complete(
        db,
        order,
        OrderEvent.BUYER_CONFIRM,
        actor=actor.id,
        expected_version=expected_version,
        gateway=gateway,
        note=note,
    )


def auto_confirm(
    db: Session,
    order_id: int,
    *,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
) -> Order | None:
    """Timer handler: complete a delivered order once its deadline has passed.

    Firing is at-least-once, so the order state is re-checked and losing the
    race to a manual confirmation is not an error.
    """

    now = now or utcnow()
    order = db.get(Order, order_id)
    if order is None or order.status != OrderStatus.DELIVERED:
        logger.info("Auto-confirm skipped", extra={"order_id": order_id, "status": getattr(order, "status", None)})
        return None
    deadline = ensure_utc(order.delivery_deadline)
    if deadline is None or deadline > now:
        logger.info("Auto-confirm skipped: deadline not reached", extra={"order_id": order_id})
        return None
    try:
        return _complete(
            db,
            order,
            OrderEvent.AUTO_CONFIRM,
            actor=SYSTEM_ACTOR,
            expected_version=order.version,
            gateway=gateway,
        )
    except StateConflictError:
        logger.info("Auto-confirm skipped: order already confirmed", extra={"order_id": order_id})
        return None


def get_order(db: Session, order_id: int, *, actor: CurrentUser) -> Order:
    order = _get_order(db, order_id)
    _ensure_can_view(order, actor)
    return order


def list_orders(
    db: Session,
    *,
    actor: CurrentUser,
    role: str | None = None,
    status: OrderStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    """The caller's orders, newest first. ``role`` narrows to purchases or sales."""

    stmt = select(Order)
    if role == "buyer":
        stmt = stmt.where(Order.buyer_id == actor.id)
    elif role == "seller":
        stmt = stmt.where(Order.seller_id == actor.id)
    else:
        stmt = stmt.where((Order.buyer_id == actor.id) | (Order.seller_id == actor.id))
    if status is not None:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def order_timeline(db: Session, order_id: int, *, actor: CurrentUser) -> list[AuditLog]:
    order = get_order(db, order_id, actor=actor)
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity == "Order", AuditLog.entity_id == order.id)
        .order_by(AuditLog.at, AuditLog.id)
    )
    return list(db.scalars(stmt))


def order_ledger(db: Session, order_id: int, *, actor: CurrentUser) -> tuple[ledger.LedgerBalance, list]:
    order = get_order(db, order_id, actor=actor)
    return ledger.balance(db, order.id), ledger.entries(db, order.id)


def retry_settlement(
    db: Session,
    order_id: int,
    *,
    actor: CurrentUser,
    gateway: PaymentGateway | None = None,
) -> Order:
    """Operator action: re-drive the failed intents of a flagged order."""

    if not actor.is_admin:
        raise PermissionDeniedError("Only admins can retry settlement.")
    order = _get_order(db, order_id)
    if order.settlement_status != SettlementStatus.FAILED_SETTLEMENT:
        raise StateConflictError(
            "Order is not awaiting a settlement retry.",
            code="NOT_FAILED_SETTLEMENT",
            details={"settlement_status": getattr(order.settlement_status, "value", None)},
        )

    with versioned_commit(db, order):
        failed = ledger.failed_intents(db, order.id)
        for intent in failed:
            intent.status = IntentStatus.PENDING
            intent.last_error = None
        order.settlement_status = SettlementStatus.PENDING
        log_audit(
            db,
            actor=actor.id,
            action="SETTLEMENT_RETRY",
            entity="Order",
            entity_id=order.id,
            data={"intents": [intent.id for intent in failed]},
        )
    logger.info("Settlement retry requested", extra={"order_id": order.id, "actor": actor.id})
    return settle(db, order, gateway=gateway)


def resume_pending_settlements(
    db: Session,
    *,
    older_than: timedelta,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
) -> int:
    """Background job: finish intents left PENDING by a crashed worker."""

    cutoff = (now or utcnow()) - older_than
    stmt = (
        select(SettlementIntent.order_id)
        .join(Order, Order.id == SettlementIntent.order_id)
        .where(
            SettlementIntent.status == IntentStatus.PENDING,
            SettlementIntent.updated_at <= cutoff,
            Order.settlement_status != SettlementStatus.FAILED_SETTLEMENT,
        )
        .distinct()
    )
    order_ids = list(db.scalars(stmt))
    resumed = 0
    for order_id in order_ids:
        order = db.get(Order, order_id)
        try:
            settle(db, order, gateway=gateway)
            resumed += 1
        except StateConflictError:
            logger.info("Settlement resume skipped: order changed", extra={"order_id": order_id})
    if order_ids:
        logger.info("Pending settlements resumed", extra={"count": resumed})
    return resumed


__all__ = [
    "OrderEvent",
    "TRANSITIONS",
    "apply_transition",
    "auto_confirm",
    "confirm_delivery",
    "create_order",
    "get_order",
    "list_orders",
    "mark_delivered",
    "next_status",
    "order_ledger",
    "order_timeline",
    "resume_pending_settlements",
    "retry_settlement",
    "settle",
    "versioned_commit",
]
