"""Alerts endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from gametrust.db import get_db
from gametrust.models.alert import Alert
from gametrust.models.api_key import ApiScope
from gametrust.schemas.alert import AlertRead
from gametrust.security import require_scope
from gametrust.services import alerts as alert_service

router = APIRouter(
    prefix="/alerts",
    tags=["alerts"],
    dependencies=[Depends(require_scope({ApiScope.admin, ApiScope.agent}))],
)


@router.get("", response_model=list[AlertRead], status_code=status.HTTP_200_OK)
def list_alerts(
    alert_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[Alert]:
    return alert_service.list_alerts(db, alert_type=alert_type, limit=limit, offset=offset)
