"""ORM models package."""
from .alert import Alert
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .dispute import (
    ACTIVE_DISPUTE_STATUSES,
    Dispute,
    DisputeParty,
    DisputePriority,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
)
from .ledger import EscrowLedgerEntry, IntentStatus, LedgerEntryKind, SettlementIntent
from .order import (
    DISPUTE_LINKED_STATUSES,
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderStatus,
    SettlementStatus,
)
from .scheduler_lock import SchedulerLock
from .timer import ScheduledTimer, TimerPurpose

__all__ = [
    "ACTIVE_DISPUTE_STATUSES",
    "Alert",
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "DISPUTE_LINKED_STATUSES",
    "Dispute",
    "DisputeParty",
    "DisputePriority",
    "DisputeReason",
    "DisputeResolution",
    "DisputeStatus",
    "EscrowLedgerEntry",
    "IntentStatus",
    "LedgerEntryKind",
    "Order",
    "OrderStatus",
    "SchedulerLock",
    "ScheduledTimer",
    "SettlementIntent",
    "SettlementStatus",
    "TERMINAL_ORDER_STATUSES",
    "TimerPurpose",
]
