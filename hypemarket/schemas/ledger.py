from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID
from hypemarket.models.ledger import WithdrawalStatus


class BalanceResponse(BaseModel):
    seller_id: UUID
    available_balance: int = 0
    pending_balance: int = 0
    total_withdrawn: int = 0
    currency: str = "usd"


class WithdrawalCreate(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor currency units")


class WithdrawalResponse(BaseModel):
    id: UUID
    seller_id: UUID
    amount: int
    currency: str
    status: WithdrawalStatus
    transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True
