"""Pydantic schemas for the HTTP surface."""
from .alert import AlertRead
from .dispute import (
    DisputeAssign,
    DisputeCreate,
    DisputeEvidenceAdd,
    DisputeRead,
    DisputeResolve,
    EvidenceMetadata,
)
from .ledger import LedgerBalanceRead, LedgerEntryRead, OrderLedgerRead
from .order import OrderCreate, OrderEventRead, OrderRead, OrderTransition

__all__ = [
    "AlertRead",
    "DisputeAssign",
    "DisputeCreate",
    "DisputeEvidenceAdd",
    "DisputeRead",
    "DisputeResolve",
    "EvidenceMetadata",
    "LedgerBalanceRead",
    "LedgerEntryRead",
    "OrderCreate",
    "OrderEventRead",
    "OrderLedgerRead",
    "OrderRead",
    "OrderTransition",
]
