"""Escrow ledger schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from gametrust.models.ledger import LedgerEntryKind


class LedgerEntryRead(BaseModel):
    id: int
    order_id: int
    kind: LedgerEntryKind
    amount: int
    external_ref: str
    idempotency_key: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerBalanceRead(BaseModel):
    held: int
    released: int
    refunded: int
    remaining: int


class OrderLedgerRead(BaseModel):
    order_id: int
    balance: LedgerBalanceRead
    entries: list[LedgerEntryRead]
