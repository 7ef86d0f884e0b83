"""DB-backed lock so that only one replica runs the deadline scheduler."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gametrust import db
from gametrust.models.scheduler_lock import SchedulerLock
from gametrust.utils.time import ensure_utc, utcnow

LOCK_NAME = "deadline-scheduler"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
    owner: str | None = None,
) -> bool:
    """Take the lock if it is free, expired, or already ours."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()

        if lock is None:
            session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            session.commit()
            return True

        expires_at = ensure_utc(lock.expires_at)
        if expires_at is None or expires_at <= now or lock.owner == owner:
            if lock.owner != owner:
                lock.acquired_at = now
            lock.owner = owner
            lock.expires_at = expires
            session.commit()
            return True

        session.rollback()
        return False
    except IntegrityError:
        # Another replica inserted the row first.
        session.rollback()
        return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
    owner: str | None = None,
) -> bool:
    """Extend the TTL when this runner owns the lock. Returns whether it still does."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()
        if lock is None or lock.owner != owner:
            session.rollback()
            return False
        lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(
    name: str = LOCK_NAME, *, db_session: Session | None = None, owner: str | None = None
) -> None:
    """Release the scheduler lock if held by this runner."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()
        if lock is not None and lock.owner == owner:
            session.delete(lock)
        session.commit()
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current scheduler lock state."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = ensure_utc(lock.acquired_at)
        expires_at = ensure_utc(lock.expires_at)
        age_seconds = (now - acquired_at).total_seconds() if acquired_at else None
        expires_in = (expires_at - now).total_seconds() if expires_at else None

        return {
            "status": "owned_by_self" if lock.owner == owner else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": age_seconds,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < 0,
        }
    finally:
        if should_close:
            session.close()
