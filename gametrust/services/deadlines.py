"""Durable deadline timers backed by ``scheduled_timers`` and APScheduler date jobs."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy import event, select, update
from sqlalchemy.orm import Session

from gametrust.models.timer import ScheduledTimer, TimerPurpose
from gametrust.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_PENDING_ACTIONS = "gametrust.timer_actions"


class TimerRunner:
    """Arms persisted timers as one-shot APScheduler jobs in this process."""

    def __init__(self, scheduler: BaseScheduler, session_factory: Callable[[], Session]) -> None:
        self.scheduler = scheduler
        self.session_factory = session_factory

    @staticmethod
    def job_id(timer_id: int) -> str:
        return f"timer-{timer_id}"

    def arm(self, timer_id: int, fire_at: datetime) -> None:
        run_date = max(ensure_utc(fire_at), utcnow())
        self.scheduler.add_job(
            self._fire,
            trigger="date",
            run_date=run_date,
            args=[timer_id],
            id=self.job_id(timer_id),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def disarm(self, timer_id: int) -> None:
        try:
            self.scheduler.remove_job(self.job_id(timer_id))
        except JobLookupError:
            pass

    def _fire(self, timer_id: int) -> None:
        db = self.session_factory()
        try:
            fire_timer(db, timer_id)
        finally:
            db.close()


_runner: TimerRunner | None = None


def set_timer_runner(runner: TimerRunner | None) -> None:
    global _runner
    _runner = runner


def get_timer_runner() -> TimerRunner | None:
    return _runner


def _defer(db: Session, action: str, timer: ScheduledTimer | int) -> None:
    db.info.setdefault(_PENDING_ACTIONS, []).append((action, timer))


@event.listens_for(Session, "after_commit")
def _apply_deferred(session: Session) -> None:
    actions = session.info.pop(_PENDING_ACTIONS, [])
    runner = _runner
    if runner is None:
        return
    for action, timer in actions:
        if action == "arm":
            runner.arm(timer.id, timer.fire_at)
        else:
            runner.disarm(timer)


@event.listens_for(Session, "after_soft_rollback")
def _discard_deferred(session: Session, previous_transaction) -> None:
    # A rolled-back savepoint leaves the enclosing transaction's actions intact.
    if not session.in_transaction():
        session.info.pop(_PENDING_ACTIONS, None)


def cancel(db: Session, order_id: int, purpose: TimerPurpose) -> int:
    """Cancel the active timer for ``(order_id, purpose)``, if any, in the current transaction."""

    stmt = select(ScheduledTimer.id).where(
        ScheduledTimer.order_id == order_id,
        ScheduledTimer.purpose == purpose,
        ScheduledTimer.cancelled.is_(False),
    )
    timer_ids = list(db.scalars(stmt))
    if not timer_ids:
        return 0
    db.execute(
        update(ScheduledTimer)
        .where(ScheduledTimer.id.in_(timer_ids))
        .values(cancelled=True)
        .execution_options(synchronize_session="fetch")
    )
    for timer_id in timer_ids:
        _defer(db, "disarm", timer_id)
    logger.info("Timer cancelled", extra={"order_id": order_id, "purpose": purpose.value})
    return len(timer_ids)


def schedule(db: Session, order_id: int, purpose: TimerPurpose, fire_at: datetime) -> ScheduledTimer:
    """Persist a timer, superseding any active one for the same order and purpose.

    The timer is armed in the running scheduler once the transaction commits.
    """

    cancel(db, order_id, purpose)
    timer = ScheduledTimer(order_id=order_id, purpose=purpose, fire_at=fire_at, cancelled=False)
    db.add(timer)
    _defer(db, "arm", timer)
    logger.info(
        "Timer scheduled",
        extra={"order_id": order_id, "purpose": purpose.value, "fire_at": fire_at.isoformat()},
    )
    return timer


def pending_timers(db: Session, *, due_before: datetime | None = None, limit: int | None = None) -> list[ScheduledTimer]:
    stmt = select(ScheduledTimer).where(ScheduledTimer.cancelled.is_(False))
    if due_before is not None:
        stmt = stmt.where(ScheduledTimer.fire_at <= due_before)
    stmt = stmt.order_by(ScheduledTimer.fire_at, ScheduledTimer.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt))


def fire_timer(db: Session, timer_id: int, *, now: datetime | None = None) -> bool:
    """Run the handler for a due timer and delete it. Returns ``False`` if nothing fired."""

    from gametrust.services import disputes, orders

    now = now or utcnow()
    timer = db.get(ScheduledTimer, timer_id)
    if timer is None or timer.cancelled:
        return False
    if ensure_utc(timer.fire_at) > now:
        return False

    order_id, purpose = timer.order_id, timer.purpose
    logger.info("Timer fired", extra={"timer_id": timer_id, "order_id": order_id, "purpose": purpose.value})
    if purpose == TimerPurpose.AUTO_CONFIRM:
        orders.auto_confirm(db, order_id, now=now)
    else:
        disputes.escalate_for_sla(db, order_id, now=now)

    timer = db.get(ScheduledTimer, timer_id)
    if timer is not None:
        db.delete(timer)
        db.commit()
    return True


def run_due_timers(db: Session, *, now: datetime | None = None, limit: int = 100) -> int:
    """Fire every due timer. Covers timers armed on other replicas or missed while down."""

    now = now or utcnow()
    fired = 0
    for timer in pending_timers(db, due_before=now, limit=limit):
        timer_id = timer.id
        try:
            if fire_timer(db, timer_id, now=now):
                fired += 1
        except Exception:
            db.rollback()
            logger.exception("Timer handler failed", extra={"timer_id": timer_id})
    return fired


def recover(db: Session, runner: TimerRunner) -> int:
    """Arm every unfired, uncancelled timer. Past-due timers fire immediately."""

    timers = pending_timers(db)
    for timer in timers:
        runner.arm(timer.id, timer.fire_at)
    logger.info("Timers recovered", extra={"count": len(timers)})
    return len(timers)


__all__ = [
    "TimerRunner",
    "cancel",
    "fire_timer",
    "get_timer_runner",
    "pending_timers",
    "recover",
    "run_due_timers",
    "schedule",
    "set_timer_runner",
]
