"""Dispute resolver: raise, review and resolve contested orders."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Literal

from sqlalchemy import case, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from gametrust.config import get_settings
from gametrust.models.dispute import (
    ACTIVE_DISPUTE_STATUSES,
    Dispute,
    DisputeParty,
    DisputePriority,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
)
from gametrust.models.ledger import LedgerEntryKind
from gametrust.models.order import Order, OrderStatus, SettlementStatus
from gametrust.models.timer import TimerPurpose
from gametrust.schemas.dispute import EvidenceMetadata
from gametrust.security import CurrentUser
from gametrust.services import deadlines, ledger, orders
from gametrust.services.evidence import get_evidence_store, validate_refs
from gametrust.services.notifications import emit
from gametrust.services.payment_gateway import PaymentGateway
from gametrust.utils.audit import log_audit
from gametrust.utils.errors import (
    DuplicateDisputeError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
    WindowClosedError,
)
from gametrust.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DISPUTABLE_STATUSES = frozenset({OrderStatus.IN_ESCROW, OrderStatus.DELIVERED})

_PRIORITY_RANK = case(
    {
        DisputePriority.URGENT: 0,
        DisputePriority.HIGH: 1,
        DisputePriority.MEDIUM: 2,
        DisputePriority.LOW: 3,
    },
    value=Dispute.priority,
    else_=4,
)


def _clean_evidence(refs: list[str], *, existing: int = 0) -> list[str]:
    cleaned = validate_refs(refs)
    limit = get_settings().DISPUTE_MAX_EVIDENCE
    if existing + len(cleaned) > limit:
        raise ValidationError(
            f"At most {limit} evidence references per dispute.",
            code="TOO_MUCH_EVIDENCE",
            details={"limit": limit, "existing": existing, "submitted": len(cleaned)},
        )
    return cleaned


def _get_dispute(db: Session, dispute_id: int) -> Dispute:
    dispute = db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFoundError("Dispute not found.", details={"dispute_id": dispute_id})
    return dispute


def _party_of(order: Order, actor: CurrentUser) -> DisputeParty | None:
    if actor.id == order.buyer_id:
        return DisputeParty.BUYER
    if actor.id == order.seller_id:
        return DisputeParty.SELLER
    return None


def _require_staff(actor: CurrentUser, action: str) -> None:
    if not actor.is_staff:
        raise PermissionDeniedError(f"Only support agents can {action} disputes.")


@contextmanager
def _dispute_commit(db: Session, dispute: Dispute) -> Iterator[None]:
    """Commit dispute changes; a lost race on ``Dispute.version`` becomes ``StateConflictError``."""

    dispute_id = dispute.id
    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise StateConflictError(
            "Dispute was modified concurrently.",
            code="VERSION_CONFLICT",
            details={"dispute_id": dispute_id},
        ) from exc
    except Exception:
        db.rollback()
        raise


def raise_dispute(
    db: Session,
    order_id: int,
    *,
    actor: CurrentUser,
    reason_code: DisputeReason,
    description: str,
    evidence_refs: list[str] | None = None,
    expected_version: int,
    now: datetime | None = None,
) -> Dispute:
    """Open the order's single dispute and suspend its normal progression."""

    refs = _clean_evidence(evidence_refs or [])
    description = (description or "").strip()
    if not description:
        raise ValidationError("A dispute needs a description.", details={"field": "description"})

    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found.", details={"order_id": order_id})
    party = _party_of(order, actor)
    if party is None:
        raise PermissionDeniedError("Only the buyer or seller can raise a dispute.")

    existing = db.scalars(select(Dispute).where(Dispute.order_id == order.id)).first()
    if existing is not None:
        raise DuplicateDisputeError(
            "A dispute already exists for this order.", details={"dispute_id": existing.id}
        )

    settings = get_settings()
    now = now or utcnow()
    if order.status not in DISPUTABLE_STATUSES:
        raise WindowClosedError(
            "Disputes can only be raised while funds are in escrow.",
            details={"status": order.status.value},
        )
    delivered_at = ensure_utc(order.delivered_at)
    if delivered_at is not None and now > delivered_at + timedelta(hours=settings.DISPUTE_WINDOW_HOURS):
        raise WindowClosedError(
            "The dispute window for this order has closed.",
            details={"delivered_at": delivered_at.isoformat(), "window_hours": settings.DISPUTE_WINDOW_HOURS},
        )

    sla_deadline = now + timedelta(hours=settings.DISPUTE_SLA_HOURS)
    try:
        with orders.versioned_commit(db, order):
            orders.apply_transition(
                db,
                order,
                orders.OrderEvent.RAISE_DISPUTE,
                expected_version=expected_version,
                actor=actor.id,
                data={"reason_code": reason_code.value, "raised_by": party.value},
            )
            deadlines.cancel(db, order.id, TimerPurpose.AUTO_CONFIRM)
            dispute = Dispute(
                order_id=order.id,
                raised_by=party,
                raised_by_user=actor.id,
                reason_code=reason_code,
                description=description,
                evidence_refs=refs,
                status=DisputeStatus.OPEN,
                priority=DisputePriority.MEDIUM,
                opened_at=now,
                sla_deadline=sla_deadline,
            )
            db.add(dispute)
            db.flush()
            order.dispute_id = dispute.id
            deadlines.schedule(db, order.id, TimerPurpose.DISPUTE_SLA_ESCALATE, sla_deadline)
            log_audit(
                db,
                actor=actor.id,
                action="DISPUTE_OPENED",
                entity="Dispute",
                entity_id=dispute.id,
                data={"order_id": order.id, "reason_code": reason_code.value, "evidence_refs": refs},
            )
    except IntegrityError as exc:
        raise DuplicateDisputeError("A dispute already exists for this order.") from exc

    logger.info(
        "Dispute opened",
        extra={"order_id": order.id, "dispute_id": dispute.id, "reason_code": reason_code.value},
    )
    emit(
        "dispute.opened",
        order_id=order.id,
        dispute_id=dispute.id,
        actor=actor.id,
        raised_by=party.value,
        reason_code=reason_code.value,
        sla_deadline=sla_deadline.isoformat(),
    )
    return dispute


def assign(db: Session, dispute_id: int, agent_id: str, *, actor: CurrentUser) -> Dispute:
    """Give the dispute to a support agent and start the review.

    An escalated dispute stays with the senior queue unless an admin moves it.
    """

    _require_staff(actor, "assign")
    dispute = _get_dispute(db, dispute_id)
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise StateConflictError(
            "Dispute is no longer open.", code="DISPUTE_NOT_ACTIVE", details={"status": dispute.status.value}
        )
    senior_queue = get_settings().DISPUTE_SENIOR_QUEUE
    if (
        dispute.escalated_at is not None
        and dispute.assigned_agent == senior_queue
        and agent_id != senior_queue
        and not actor.is_admin
    ):
        raise PermissionDeniedError(
            "Only an admin can move an escalated dispute off the senior queue.",
            code="ESCALATED_DISPUTE",
            details={"assigned_agent": senior_queue, "priority": dispute.priority.value},
        )
    previous = dispute.assigned_agent
    with _dispute_commit(db, dispute):
        dispute.assigned_agent = agent_id
        dispute.status = DisputeStatus.UNDER_REVIEW
        log_audit(
            db,
            actor=actor.id,
            action="DISPUTE_ASSIGNED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"previous_agent": previous, "agent_id": agent_id, "priority": dispute.priority.value},
        )
    emit(
        "dispute.assigned",
        order_id=dispute.order_id,
        dispute_id=dispute.id,
        actor=actor.id,
        previous_agent=previous,
        new_agent=agent_id,
    )
    return dispute


def add_evidence(db: Session, dispute_id: int, refs: list[str], *, actor: CurrentUser) -> Dispute:
    dispute = _get_dispute(db, dispute_id)
    cleaned = validate_refs(refs)
    order = db.get(Order, dispute.order_id)
    if _party_of(order, actor) is None:
        raise PermissionDeniedError("Only the buyer or seller can add evidence.")
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise StateConflictError(
            "Evidence can only be added to an open dispute.",
            code="DISPUTE_NOT_ACTIVE",
            details={"status": dispute.status.value},
        )
    current = list(dispute.evidence_refs or [])
    cleaned = _clean_evidence(cleaned, existing=len(current))
    with _dispute_commit(db, dispute):
        dispute.evidence_refs = current + cleaned
        log_audit(
            db,
            actor=actor.id,
            action="DISPUTE_EVIDENCE_ADDED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"evidence_refs": cleaned},
        )
    emit("dispute.evidence_added", order_id=dispute.order_id, dispute_id=dispute.id, actor=actor.id, count=len(cleaned))
    return dispute


def resolve(
    db: Session,
    dispute_id: int,
    resolution: DisputeResolution,
    notes: str,
    *,
    actor: CurrentUser,
    refund_amount: int | None = None,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> Dispute:
    """Record a binding decision and have the ledger settle it."""

    _require_staff(actor, "resolve")
    dispute = _get_dispute(db, dispute_id)
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise StateConflictError(
            "Dispute is already resolved.",
            code="DISPUTE_ALREADY_RESOLVED",
            details={"status": dispute.status.value},
        )
    order = db.get(Order, dispute.order_id)

    if resolution == DisputeResolution.SPLIT:
        if refund_amount is None or not 0 < refund_amount < order.amount:
            raise ValidationError(
                "A split refund must be between zero and the order amount.",
                details={"refund_amount": refund_amount, "amount": order.amount},
            )
    elif refund_amount is not None:
        raise ValidationError("refund_amount is only accepted for a SPLIT resolution.")

    event = (
        orders.OrderEvent.RESOLVE_REFUND
        if resolution == DisputeResolution.REFUND_BUYER
        else orders.OrderEvent.RESOLVE_RELEASE
    )
    now = now or utcnow()
    with orders.versioned_commit(db, order):
        orders.apply_transition(
            db,
            order,
            event,
            expected_version=order.version,
            actor=actor.id,
            data={"dispute_id": dispute.id, "resolution": resolution.value},
        )
        deadlines.cancel(db, order.id, TimerPurpose.DISPUTE_SLA_ESCALATE)
        if resolution == DisputeResolution.REFUND_BUYER:
            ledger.record_intent(db, order, LedgerEntryKind.REFUND)
        elif resolution == DisputeResolution.RELEASE_SELLER:
            ledger.record_intent(db, order, LedgerEntryKind.RELEASE)
        else:
            ledger.record_intent(db, order, LedgerEntryKind.PARTIAL_REFUND, refund_amount)
            ledger.record_intent(db, order, LedgerEntryKind.RELEASE)
        order.settlement_status = SettlementStatus.PENDING

        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution = resolution
        dispute.resolution_notes = notes
        dispute.refund_amount = refund_amount
        dispute.resolved_by = actor.id
        dispute.resolved_at = now
        log_audit(
            db,
            actor=actor.id,
            action="DISPUTE_RESOLVED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"resolution": resolution.value, "refund_amount": refund_amount},
        )

    logger.info(
        "Dispute resolved",
        extra={"order_id": order.id, "dispute_id": dispute.id, "resolution": resolution.value},
    )
    emit(
        "dispute.resolved",
        order_id=order.id,
        dispute_id=dispute.id,
        actor=actor.id,
        resolution=resolution.value,
        status=order.status.value,
    )
    orders.settle(db, order, gateway=gateway)
    return dispute


def escalate_for_sla(db: Session, order_id: int, *, now: datetime | None = None) -> Dispute | None:
    """Timer handler: escalate a dispute left unresolved past its SLA deadline.

    Reassigns it to the senior queue; the ledger is not touched.
    """

    now = now or utcnow()
    order = db.get(Order, order_id)
    if order is None or order.status != OrderStatus.DISPUTED or order.dispute_id is None:
        logger.info("SLA escalation skipped", extra={"order_id": order_id})
        return None
    dispute = db.get(Dispute, order.dispute_id)
    if dispute is None or dispute.status not in ACTIVE_DISPUTE_STATUSES:
        return None
    if ensure_utc(dispute.sla_deadline) > now:
        return None

    settings = get_settings()
    previous_agent = dispute.assigned_agent
    try:
        with orders.versioned_commit(db, order):
            orders.apply_transition(
                db,
                order,
                orders.OrderEvent.SLA_BREACH,
                expected_version=order.version,
                actor=orders.SYSTEM_ACTOR,
                data={"dispute_id": dispute.id},
            )
            dispute.assigned_agent = settings.DISPUTE_SENIOR_QUEUE
            dispute.priority = DisputePriority.URGENT
            dispute.status = DisputeStatus.UNDER_REVIEW
            dispute.escalated_at = now
            log_audit(
                db,
                actor=orders.SYSTEM_ACTOR,
                action="DISPUTE_REASSIGNED",
                entity="Dispute",
                entity_id=dispute.id,
                data={"previous_agent": previous_agent, "new_agent": settings.DISPUTE_SENIOR_QUEUE},
            )
    except StateConflictError:
        logger.info("SLA escalation skipped: order changed", extra={"order_id": order_id})
        return None

    logger.warning("Dispute escalated after SLA breach", extra={"order_id": order.id, "dispute_id": dispute.id})
    emit(
        "dispute.reassigned",
        order_id=order.id,
        dispute_id=dispute.id,
        actor=orders.SYSTEM_ACTOR,
        previous_agent=previous_agent,
        new_agent=settings.DISPUTE_SENIOR_QUEUE,
        reason="sla_breach",
    )
    emit("order.escalated", order_id=order.id, dispute_id=dispute.id, status=order.status.value)
    return dispute


def get_dispute(db: Session, dispute_id: int, *, actor: CurrentUser) -> Dispute:
    dispute = _get_dispute(db, dispute_id)
    if actor.is_staff:
        return dispute
    order = db.get(Order, dispute.order_id)
    if _party_of(order, actor) is None:
        raise PermissionDeniedError("Not a party to this dispute.")
    return dispute


def evidence_metadata(db: Session, dispute_id: int, *, actor: CurrentUser) -> list[EvidenceMetadata]:
    dispute = get_dispute(db, dispute_id, actor=actor)
    store = get_evidence_store()
    return [store.resolve(ref) for ref in dispute.evidence_refs or []]


def list_disputes(
    db: Session,
    *,
    status: DisputeStatus | None = None,
    assigned_agent: str | None = None,
    unassigned: bool = False,
    overdue: bool = False,
    now: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    """Agent work queue: most urgent first, then oldest SLA deadline.

    ``overdue`` keeps active disputes whose SLA deadline has passed.
    """

    stmt = select(Dispute)
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    if assigned_agent is not None:
        stmt = stmt.where(Dispute.assigned_agent == assigned_agent)
    if unassigned:
        stmt = stmt.where(Dispute.assigned_agent.is_(None))
    if overdue:
        stmt = stmt.where(
            Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
            Dispute.sla_deadline < (now or utcnow()),
        )
    stmt = stmt.order_by(_PRIORITY_RANK, Dispute.sla_deadline, Dispute.id).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def list_user_disputes(
    db: Session,
    *,
    actor: CurrentUser,
    status: DisputeStatus | None = None,
    side: Literal["initiator", "respondent"] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    """Disputes on the caller's orders, newest first."""

    stmt = (
        select(Dispute)
        .join(Order, Order.id == Dispute.order_id)
        .where(or_(Order.buyer_id == actor.id, Order.seller_id == actor.id))
    )
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    if side == "initiator":
        stmt = stmt.where(Dispute.raised_by_user == actor.id)
    elif side == "respondent":
        stmt = stmt.where(Dispute.raised_by_user != actor.id)
    stmt = stmt.order_by(Dispute.opened_at.desc(), Dispute.id.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt))


__all__ = [
    "add_evidence",
    "assign",
    "escalate_for_sla",
    "evidence_metadata",
    "get_dispute",
    "list_disputes",
    "list_user_disputes",
    "raise_dispute",
    "resolve",
]
