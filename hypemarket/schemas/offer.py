from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID
from hypemarket.models.marketplace import OfferStatus


class OfferCreate(BaseModel):
    amount: int = Field(..., gt=0, description="Offer in minor currency units")
    message: Optional[str] = Field(None, max_length=2000)


class OfferCounter(BaseModel):
    amount: int = Field(..., gt=0)
    message: Optional[str] = Field(None, max_length=2000)


class OfferResponse(BaseModel):
    id: UUID
    listing_id: UUID
    buyer_id: UUID
    amount: int
    message: Optional[str] = None
    status: OfferStatus
    expires_at: datetime
    counter_amount: Optional[int] = None
    counter_message: Optional[str] = None
    countered_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
