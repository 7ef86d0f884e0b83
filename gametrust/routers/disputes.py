"""Dispute endpoints."""
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gametrust.db import get_db
from gametrust.models.api_key import ApiScope
from gametrust.models.dispute import Dispute, DisputeStatus
from gametrust.schemas.dispute import (
    DisputeAssign,
    DisputeEvidenceAdd,
    DisputeRead,
    DisputeResolve,
    EvidenceMetadata,
)
from gametrust.security import CurrentUser, current_user, require_scope
from gametrust.services import disputes as dispute_service

router = APIRouter(prefix="/disputes", tags=["disputes"])

_staff = require_scope({ApiScope.agent, ApiScope.admin})


@router.get("", response_model=list[DisputeRead])
def list_disputes(
    dispute_status: DisputeStatus | None = Query(default=None, alias="status"),
    assigned_agent: str | None = Query(default=None),
    unassigned: bool = Query(default=False),
    overdue: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(_staff),
) -> list[Dispute]:
    return dispute_service.list_disputes(
        db,
        status=dispute_status,
        assigned_agent=assigned_agent,
        unassigned=unassigned,
        overdue=overdue,
        limit=limit,
        offset=offset,
    )


@router.get("/mine", response_model=list[DisputeRead])
def list_my_disputes(
    dispute_status: DisputeStatus | None = Query(default=None, alias="status"),
    side: Literal["initiator", "respondent"] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> list[Dispute]:
    return dispute_service.list_user_disputes(
        db, actor=user, status=dispute_status, side=side, limit=limit, offset=offset
    )


@router.get("/{dispute_id}", response_model=DisputeRead)
def get_dispute(dispute_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(current_user)) -> Dispute:
    return dispute_service.get_dispute(db, dispute_id, actor=user)


@router.get("/{dispute_id}/evidence", response_model=list[EvidenceMetadata])
def list_evidence(
    dispute_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(current_user)
) -> list[EvidenceMetadata]:
    return dispute_service.evidence_metadata(db, dispute_id, actor=user)


@router.post("/{dispute_id}/evidence", response_model=DisputeRead)
def add_evidence(
    dispute_id: int,
    payload: DisputeEvidenceAdd,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
) -> Dispute:
    return dispute_service.add_evidence(db, dispute_id, payload.evidence_refs, actor=user)


@router.post("/{dispute_id}/assign", response_model=DisputeRead)
def assign_dispute(
    dispute_id: int,
    payload: DisputeAssign,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(_staff),
) -> Dispute:
    return dispute_service.assign(db, dispute_id, payload.agent_id, actor=user)


@router.post("/{dispute_id}/resolve", response_model=DisputeRead)
def resolve_dispute(
    dispute_id: int,
    payload: DisputeResolve,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(_staff),
) -> Dispute:
    return dispute_service.resolve(
        db,
        dispute_id,
        payload.resolution,
        payload.notes,
        actor=user,
        refund_amount=payload.refund_amount,
    )
