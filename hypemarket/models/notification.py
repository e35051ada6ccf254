from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, JSON, Uuid
from hypemarket.database import Base
from hypemarket.utils.helpers import utcnow
import uuid
from enum import Enum


class NotificationEvent(str, Enum):
    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_COUNTERED = "offer_countered"
    OFFER_WITHDRAWN = "offer_withdrawn"
    OFFER_EXPIRED = "offer_expired"
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    PAYMENT_FAILED = "payment_failed"
    ORDER_STARTED = "order_started"
    ORDER_DELIVERED = "order_delivered"
    REVISION_REQUESTED = "revision_requested"
    ORDER_COMPLETED = "order_completed"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_DISPUTED = "order_disputed"
    ORDER_REFUNDED = "order_refunded"
    DISPUTE_RESOLVED = "dispute_resolved"
    FUNDS_CLEARED = "funds_cleared"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    event = Column(String(64), nullable=False)
    payload = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
