"""Dispute schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gametrust.models.dispute import (
    DisputeParty,
    DisputePriority,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
)


class DisputeCreate(BaseModel):
    version: int = Field(ge=1)
    reason_code: DisputeReason
    description: str = Field(min_length=1, max_length=5000)
    evidence_refs: list[str] = Field(default_factory=list)


class DisputeEvidenceAdd(BaseModel):
    evidence_refs: list[str] = Field(min_length=1)


class DisputeAssign(BaseModel):
    agent_id: str = Field(min_length=1, max_length=64)


class DisputeResolve(BaseModel):
    resolution: DisputeResolution
    notes: str = Field(min_length=1, max_length=5000)
    refund_amount: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _split_needs_amount(self) -> "DisputeResolve":
        if self.resolution == DisputeResolution.SPLIT and self.refund_amount is None:
            raise ValueError("refund_amount is required for a SPLIT resolution")
        if self.resolution != DisputeResolution.SPLIT and self.refund_amount is not None:
            raise ValueError("refund_amount is only accepted for a SPLIT resolution")
        return self


class DisputeRead(BaseModel):
    id: int
    order_id: int
    raised_by: DisputeParty
    raised_by_user: str
    reason_code: DisputeReason
    description: str
    evidence_refs: list[str]
    status: DisputeStatus
    priority: DisputePriority
    resolution: DisputeResolution | None
    resolution_notes: str | None
    refund_amount: int | None
    assigned_agent: str | None
    opened_at: datetime
    sla_deadline: datetime
    escalated_at: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None
    version: int

    model_config = ConfigDict(from_attributes=True)


class EvidenceMetadata(BaseModel):
    ref: str
    host: str
    filename: str | None
    media_type: str | None
