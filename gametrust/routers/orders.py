"""Order endpoints."""
from typing import Literal

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from gametrust.db import get_db
from gametrust.models.api_key import ApiScope
from gametrust.models.dispute import Dispute
from gametrust.models.order import Order, OrderStatus
from gametrust.schemas.dispute import DisputeCreate, DisputeRead
from gametrust.schemas.ledger import LedgerBalanceRead, LedgerEntryRead, OrderLedgerRead
from gametrust.schemas.order import OrderCreate, OrderEventRead, OrderRead, OrderTransition
from gametrust.security import CurrentUser, current_user, require_scope
from gametrust.services import disputes as dispute_service
from gametrust.services import orders as order_service
from gametrust.services.idempotency import normalize_key

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(current_user),
) -> Order:
    return order_service.create_order(db, payload, buyer=user, idempotency_key=normalize_key(idempotency_key))


@router.get("", response_model=list[OrderRead])
def list_orders(
    role: Literal["buyer", "seller"] | None = Query(default=None),
    order_status: OrderStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> list[Order]:
    return order_service.list_orders(db, actor=user, role=role, status=order_status, limit=limit, offset=offset)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(current_user)) -> Order:
    return order_service.get_order(db, order_id, actor=user)


@router.post("/{order_id}/mark-delivered", response_model=OrderRead)
def mark_delivered(
    order_id: int,
    payload: OrderTransition,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> Order:
    return order_service.mark_delivered(
        db, order_id, actor=user, expected_version=payload.version, note=payload.note
    )


@router.post("/{order_id}/confirm", response_model=OrderRead)
def confirm_delivery(
    order_id: int,
    payload: OrderTransition,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> Order:
    return order_service.confirm_delivery(
        db, order_id, actor=user, expected_version=payload.version, note=payload.note
    )


@router.post("/{order_id}/disputes", response_model=DisputeRead, status_code=status.HTTP_201_CREATED)
def raise_dispute(
    order_id: int,
    payload: DisputeCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> Dispute:
    return dispute_service.raise_dispute(
        db,
        order_id,
        actor=user,
        reason_code=payload.reason_code,
        description=payload.description,
        evidence_refs=payload.evidence_refs,
        expected_version=payload.version,
    )


@router.get("/{order_id}/ledger", response_model=OrderLedgerRead)
def order_ledger(
    order_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(current_user)
) -> OrderLedgerRead:
    totals, entries = order_service.order_ledger(db, order_id, actor=user)
    return OrderLedgerRead(
        order_id=order_id,
        balance=LedgerBalanceRead(
            held=totals.held,
            released=totals.released,
            refunded=totals.refunded,
            remaining=totals.remaining,
        ),
        entries=[LedgerEntryRead.model_validate(entry) for entry in entries],
    )


@router.get("/{order_id}/events", response_model=list[OrderEventRead])
def order_events(order_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(current_user)):
    return order_service.order_timeline(db, order_id, actor=user)


@router.post("/{order_id}/retry-settlement", response_model=OrderRead)
def retry_settlement(
    order_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(require_scope({ApiScope.admin})),
) -> Order:
    return order_service.retry_settlement(db, order_id, actor=user)
