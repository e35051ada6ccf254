from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, Boolean, CheckConstraint, Uuid
from hypemarket.database import Base, enum_type
from hypemarket.utils.helpers import utcnow
import uuid
from enum import Enum


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    CLEARED = "cleared"
    REVERSED = "reversed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_ledger_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_ledger_pending_non_negative"),
        CheckConstraint("total_withdrawn >= 0", name="ck_ledger_withdrawn_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False, unique=True)
    available_balance = Column(BigInteger, default=0, nullable=False)
    pending_balance = Column(BigInteger, default=0, nullable=False)
    total_withdrawn = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LedgerEntry(Base):
    """Seller proceeds of one completed order."""

    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True)
    gross_amount = Column(BigInteger, nullable=False)
    fee_amount = Column(BigInteger, nullable=False)
    net_amount = Column(BigInteger, nullable=False)
    status = Column(enum_type(LedgerEntryStatus), default=LedgerEntryStatus.PENDING, nullable=False, index=True)
    clears_at = Column(DateTime, nullable=False)
    cleared_at = Column(DateTime)
    reversed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(enum_type(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False, index=True)
    transfer_id = Column(String(255))
    failure_reason = Column(String(500))
    requested_at = Column(DateTime, default=utcnow, nullable=False)
    settled_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ReconciliationIssue(Base):
    """Ledger inconsistency recorded for manual follow-up instead of being auto-corrected."""

    __tablename__ = "reconciliation_issues"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"))
    withdrawal_id = Column(Uuid, ForeignKey("withdrawal_requests.id"))
    amount = Column(BigInteger, nullable=False)
    reason = Column(String(500), nullable=False)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
