"""Security dependencies: API key validation, caller identity and scope enforcement."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from gametrust.config import DEV_API_KEY_ALLOWED, ENV
from gametrust.db import get_db
from gametrust.models.api_key import ApiKey, ApiScope
from gametrust.utils.apikey import LEGACY_KEY, find_valid_key
from gametrust.utils.audit import log_audit
from gametrust.utils.errors import error_response
from gametrust.utils.time import utcnow

LEGACY_SUBJECT = "dev-admin"


@dataclass(frozen=True)
class CurrentUser:
    """Resolved caller identity: an opaque user id and its role."""

    id: str
    role: ApiScope

    @property
    def is_staff(self) -> bool:
        return self.role in {ApiScope.agent, ApiScope.admin}

    @property
    def is_admin(self) -> bool:
        return self.role == ApiScope.admin


SYSTEM_USER = CurrentUser(id="SYS", role=ApiScope.admin)


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> ApiKey:
    """Validate API key tokens and return the corresponding row."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    key = find_valid_key(db, token)
    if key == LEGACY_KEY:
        if not DEV_API_KEY_ALLOWED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled."),
            )
        now = utcnow()
        log_audit(
            db,
            actor="legacy-apikey",
            action="LEGACY_API_KEY_USED",
            entity="ApiKey",
            entity_id=0,
            data={"env": ENV},
        )
        db.commit()
        return ApiKey(
            id=0,
            name="__legacy__",
            prefix="legacy",
            key_hash="legacy",
            subject=LEGACY_SUBJECT,
            scope=ApiScope.admin,
            is_active=True,
            created_at=now,
            expires_at=None,
            last_used_at=now,
        )

    if not isinstance(key, ApiKey):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    key.last_used_at = utcnow()
    db.commit()
    return key


def current_user(key: ApiKey = Depends(require_api_key)) -> CurrentUser:
    """Identity provider: map the authenticated key to the caller it speaks for."""

    return CurrentUser(id=key.subject, role=ApiScope(key.scope))


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Ensure the caller holds one of the allowed scopes (admin always passes)."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(user: CurrentUser = Depends(current_user)) -> CurrentUser:
        if user.role == ApiScope.admin or user.role in allowed:
            return user
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {sorted(scope.value for scope in allowed)}",
            ),
        )

    return _dep


__all__ = ["CurrentUser", "SYSTEM_USER", "current_user", "require_api_key", "require_scope"]
