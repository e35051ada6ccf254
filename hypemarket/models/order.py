from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, JSON, Uuid, UniqueConstraint
from hypemarket.database import Base, enum_type
from hypemarket.utils.helpers import utcnow
import uuid
from enum import Enum


class OrderType(str, Enum):
    DIRECT_PURCHASE = "direct_purchase"
    ACCEPTED_OFFER = "accepted_offer"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    IN_REVISION = "in_revision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


DISPUTABLE_ORDER_STATUSES = (
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PAID,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DELIVERED,
    OrderStatus.IN_REVISION,
)

ACTIVE_ORDER_STATUSES = (
    OrderStatus.PAID,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DELIVERED,
    OrderStatus.IN_REVISION,
)

TERMINAL_ORDER_STATUSES = (
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id = Column(Uuid, ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    # An accepted offer maps to exactly one order
    origin_offer_id = Column(Uuid, ForeignKey("offers.id"), unique=True)
    order_type = Column(enum_type(OrderType), nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    platform_fee = Column(BigInteger, nullable=False)
    seller_amount = Column(BigInteger, nullable=False)
    status = Column(enum_type(OrderStatus), default=OrderStatus.PENDING_PAYMENT, nullable=False, index=True)
    payment_ref = Column(String(255), unique=True)
    revisions = Column(Integer, default=0, nullable=False)
    max_revisions = Column(Integer, default=3, nullable=False)
    revision_notes = Column(Text)
    delivery_message = Column(Text)
    delivery_files = Column(JSON, default=list, nullable=False)
    dispute_reason = Column(Text)
    disputed_from = Column(enum_type(OrderStatus))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime)
    started_at = Column(DateTime)
    delivered_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    refunded_at = Column(DateTime)

    @property
    def revisions_left(self) -> int:
        return self.max_revisions - self.revisions


class OrderDelivery(Base):
    """One submitted delivery; redeliveries after a revision add a row, never overwrite."""

    __tablename__ = "order_deliveries"
    __table_args__ = (UniqueConstraint("order_id", "revision_number", name="uq_order_deliveries_revision"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    buyer_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    revision_number = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)
    files = Column(JSON, default=list, nullable=False)
    delivered_at = Column(DateTime, default=utcnow, nullable=False)


class StatusTransition(Base):
    """Audit trail of every status change, enough to rebuild history for disputes."""

    __tablename__ = "status_transitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(Uuid, nullable=False, index=True)
    from_status = Column(String(32))
    to_status = Column(String(32), nullable=False)
    actor_id = Column(Uuid)
    note = Column(String(500))
    created_at = Column(DateTime, default=utcnow, nullable=False)
