"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from gametrust.models.audit import AuditLog
from gametrust.utils.time import utcnow


SENSITIVE_KEYS = {
    "email",
    "external_ref",
    "evidence_refs",
    "payment_method",
}


def _mask_url(text: str) -> str:
    base = text.split("?", 1)[0]
    if "/" in base:
        prefix = base.rsplit("/", 1)[0]
        return f"{prefix}/***"
    return "***/***"


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "evidence_refs":
        if isinstance(value, (list, tuple)):
            return [_mask_url(str(item)) for item in value]
        return _mask_url(str(value))

    if key in {"external_ref", "payment_method"}:
        text = str(value)
        if len(text) <= 6:
            return "***"
        return f"***{text[-4:]}"

    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with gateway references and evidence URLs masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                sanitized[key] = _mask_value(key, value)
            else:
                sanitized[key] = sanitize_payload_for_audit(value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the shared AuditLog table (committed by the caller)."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )
