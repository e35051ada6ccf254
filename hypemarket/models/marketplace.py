from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, Index, Uuid, text
from hypemarket.database import Base, enum_type
from hypemarket.utils.helpers import utcnow
import uuid
from enum import Enum


class ListingStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SOLD = "sold"


class ListingType(str, Enum):
    DIGITAL_PRODUCT = "digital_product"
    SERVICE = "service"


class ListingAvailability(str, Enum):
    SINGLE = "single"
    UNLIMITED = "unlimited"


class OfferStatus(str, Enum):
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


OPEN_OFFER_STATUSES = (OfferStatus.PENDING, OfferStatus.COUNTERED)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(enum_type(ListingStatus), default=ListingStatus.DRAFT, nullable=False)
    listing_type = Column(enum_type(ListingType), default=ListingType.DIGITAL_PRODUCT, nullable=False)
    availability = Column(enum_type(ListingAvailability), default=ListingAvailability.SINGLE, nullable=False)
    max_revisions = Column(Integer, default=3, nullable=False)
    sold_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        # One open negotiation per buyer and listing
        Index(
            "uq_offers_open_buyer_listing",
            "listing_id",
            "buyer_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'countered')"),
            sqlite_where=text("status IN ('pending', 'countered')"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id = Column(Uuid, ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    message = Column(Text, default="")
    status = Column(enum_type(OfferStatus), default=OfferStatus.PENDING, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    counter_amount = Column(BigInteger)
    counter_message = Column(Text)
    countered_at = Column(DateTime)
    responded_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def effective_status(self, now) -> OfferStatus:
        if self.status in OPEN_OFFER_STATUSES and self.expires_at <= now:
            return OfferStatus.EXPIRED
        return self.status

    @property
    def agreed_amount(self) -> int:
        if self.status == OfferStatus.COUNTERED and self.counter_amount:
            return self.counter_amount
        return self.amount
