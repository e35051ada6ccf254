from sqlalchemy import Column, String, Boolean, DateTime, Uuid
from hypemarket.database import Base, enum_type
from hypemarket.core.permissions import Role, UserType
from hypemarket.utils.helpers import utcnow
import uuid


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100))
    role = Column(enum_type(Role), default=Role.USER, nullable=False)
    user_type = Column(enum_type(UserType), default=UserType.BUYER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_hype_mode = Column(Boolean, default=False, nullable=False)
    # Connected payout account at the payment gateway
    payout_account_id = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deactivated_at = Column(DateTime, nullable=True)
