"""Alert service helpers."""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from gametrust.models.alert import Alert

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    order_id: int | None,
    payload: dict[str, Any],
) -> Alert:
    """Persist an alert in the database."""

    alert = Alert(type=alert_type, message=message[:255], order_id=order_id, payload_json=payload)
    db.add(alert)
    db.commit()
    db.refresh(alert)
    logger.warning("Alert created", extra={"type": alert_type, "order_id": order_id, "payload": payload})
    return alert


def list_alerts(db: Session, *, alert_type: str | None = None, limit: int = 100, offset: int = 0) -> list[Alert]:
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc())
    if alert_type:
        stmt = stmt.where(Alert.type == alert_type)
    return list(db.scalars(stmt.offset(offset).limit(limit)))
