"""Background jobs run by the deadline scheduler."""
from __future__ import annotations

import logging
from datetime import timedelta

from gametrust import db as database
from gametrust.config import get_settings
from gametrust.core.runtime_state import record_sweep
from gametrust.services import deadlines, orders
from gametrust.services.scheduler_lock import refresh_scheduler_lock
from gametrust.utils.time import utcnow

logger = logging.getLogger(__name__)


def fire_due_timers_once() -> int:
    """Sweep for due timers, including ones armed on other replicas."""

    with database.session_scope() as session:
        now = utcnow()
        fired = deadlines.run_due_timers(session, now=now)
        record_sweep(now, fired)
        if fired:
            logger.info("Timer sweep fired timers", extra={"fired": fired})
        return fired


def resume_settlements_once() -> int:
    """Re-drive settlement intents left pending by an interrupted worker."""

    settings = get_settings()
    with database.session_scope() as session:
        return orders.resume_pending_settlements(
            session, older_than=timedelta(minutes=settings.SETTLEMENT_RESUME_MINUTES)
        )


def heartbeat_scheduler_lock() -> None:
    if not refresh_scheduler_lock():
        logger.warning("Scheduler lock lost; another replica now owns the deadline scheduler")
