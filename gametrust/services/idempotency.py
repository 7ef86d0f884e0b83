"""Idempotency helpers."""
from typing import Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from gametrust.utils.errors import ValidationError

T = TypeVar("T")

MAX_KEY_LENGTH = 128


def normalize_key(raw: str | None) -> str | None:
    """Validate a caller-supplied ``Idempotency-Key`` header.

    ``None`` means the caller did not send one; a blank or oversized value is rejected.
    """

    if raw is None:
        return None
    cleaned = raw.strip()
    if not cleaned:
        raise ValidationError("Idempotency-Key must not be blank.", code="IDEMPOTENCY_KEY_REQUIRED")
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key must be at most {MAX_KEY_LENGTH} characters.", code="IDEMPOTENCY_KEY_INVALID"
        )
    return cleaned


def get_existing_by_key(
    db: Session,
    model: Type[T],
    key_value: str | None,
    *,
    key_field: str = "idempotency_key",
) -> Optional[T]:
    """Return existing record for a given idempotency key if present."""
    if not key_value:
        return None
    if not hasattr(model, key_field):
        raise AttributeError(f"{model.__name__} has no field '{key_field}'")

    column = getattr(model, key_field)
    stmt = select(model).where(column == key_value).limit(1)
    return db.scalars(stmt).first()
