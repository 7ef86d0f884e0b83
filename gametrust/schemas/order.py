"""Order schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gametrust.models.order import OrderStatus, SettlementStatus


class OrderCreate(BaseModel):
    seller_id: str = Field(min_length=1, max_length=64)
    listing_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(gt=0, description="Price in minor currency units")

    @field_validator("seller_id", "listing_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


class OrderTransition(BaseModel):
    """Body of a caller-driven transition; ``version`` is the last observed token."""

    version: int = Field(ge=1)
    note: str | None = Field(default=None, max_length=1000)


class OrderRead(BaseModel):
    id: int
    buyer_id: str
    seller_id: str
    listing_id: str
    amount: int
    status: OrderStatus
    settlement_status: SettlementStatus | None
    delivered_at: datetime | None
    delivery_deadline: datetime | None
    dispute_id: int | None
    version: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderEventRead(BaseModel):
    action: str
    actor: str
    at: datetime
    data: dict = Field(validation_alias="data_json")

    model_config = ConfigDict(from_attributes=True)
