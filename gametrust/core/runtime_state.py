"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from datetime import datetime

_scheduler_active = False
_last_sweep_at: datetime | None = None
_last_sweep_fired = 0


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_sweep(at: datetime, fired: int) -> None:
    global _last_sweep_at, _last_sweep_fired
    _last_sweep_at = at
    _last_sweep_fired = fired


def sweep_stats() -> dict[str, object]:
    return {
        "last_sweep_at": _last_sweep_at.isoformat() if _last_sweep_at else None,
        "last_sweep_fired": _last_sweep_fired,
    }
