from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import datetime
from uuid import UUID
from hypemarket.models.order import OrderStatus, OrderType


class DeliveryCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    files: List[str] = Field(default_factory=list, description="Attachment URLs or handles")


class RevisionRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=5000)


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class DisputeResolution(BaseModel):
    outcome: Literal["refund", "resume"]
    note: Optional[str] = Field(None, max_length=500)


class OrderResponse(BaseModel):
    id: UUID
    listing_id: UUID
    buyer_id: UUID
    seller_id: UUID
    origin_offer_id: Optional[UUID] = None
    order_type: OrderType
    amount: int
    currency: str
    platform_fee: int
    seller_amount: int
    status: OrderStatus
    payment_ref: Optional[str] = None
    revisions: int
    max_revisions: int
    revision_notes: Optional[str] = None
    delivery_message: Optional[str] = None
    delivery_files: List[str] = []
    dispute_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OfferAcceptResponse(BaseModel):
    offer_id: UUID
    order: OrderResponse


class PaymentStartResponse(BaseModel):
    order_id: UUID
    payment_ref: str
    client_secret: Optional[str] = None
    amount: int
    currency: str


class DeliveryResponse(BaseModel):
    id: UUID
    order_id: UUID
    seller_id: UUID
    revision_number: int
    message: str
    files: List[str] = []
    delivered_at: datetime

    class Config:
        from_attributes = True


class DeliveryHistoryResponse(BaseModel):
    order_id: UUID
    status: OrderStatus
    revisions_used: int
    revisions_left: int
    deliveries: List[DeliveryResponse]


class TimelineEntry(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[UUID] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderTimelineResponse(BaseModel):
    order_id: UUID
    current_status: OrderStatus
    timeline: List[TimelineEntry]


class StatusSummary(BaseModel):
    status: OrderStatus
    count: int
    total_amount: int


class SellerStatsResponse(BaseModel):
    total_orders: int
    total_revenue: int
    pending_revenue: int
    by_status: List[StatusSummary]
