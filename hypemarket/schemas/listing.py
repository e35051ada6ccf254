from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from uuid import UUID
from hypemarket.models.marketplace import ListingAvailability, ListingStatus, ListingType


class ListingCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: int = Field(..., gt=0, description="Price in minor currency units")
    currency: str = "usd"
    status: ListingStatus = ListingStatus.DRAFT
    listing_type: ListingType = ListingType.DIGITAL_PRODUCT
    availability: ListingAvailability = ListingAvailability.SINGLE
    max_revisions: Optional[int] = Field(None, ge=0, le=20)


class ListingUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[int] = Field(None, gt=0)
    max_revisions: Optional[int] = Field(None, ge=0, le=20)


class ListingBatchRequest(BaseModel):
    ids: List[str]


class ListingResponse(BaseModel):
    id: UUID
    owner_id: UUID
    title: str
    description: Optional[str] = None
    price: int
    currency: str
    status: ListingStatus
    listing_type: ListingType
    availability: ListingAvailability
    max_revisions: int
    sold_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
