import enum
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Numeric, CheckConstraint
from sqlalchemy.sql import func

from .base import Base, JSONType


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DiscountCode(Base):
    """
    Promotional, referral and reward codes.

    is_referral=True rows are a user's invite code (owner in influencer_id).
    Balance-limited codes carry remaining_balance, decremented only after a
    confirmed payment.
    """
    __tablename__ = "discount_codes"
    __table_args__ = (
        CheckConstraint("remaining_balance IS NULL OR remaining_balance >= 0", name="ck_discount_codes_balance"),
        CheckConstraint("usage_count <= max_usage", name="ck_discount_codes_usage"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_type = Column(String(20), nullable=False, default=DiscountType.PERCENTAGE.value)
    valid_until = Column(Date, nullable=True)
    applicable_courses = Column(JSONType, nullable=False, default=list)
    max_usage = Column(Integer, nullable=False, default=1)
    usage_count = Column(Integer, nullable=False, default=0)
    is_used = Column(Boolean, nullable=False, default=False)
    used_by = Column(String(255), nullable=True, index=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    influencer_id = Column(String(255), nullable=True, index=True)
    commission = Column(Numeric(10, 2), nullable=True, default=0)
    is_referral = Column(Boolean, nullable=False, default=False)
    has_balance_limit = Column(Boolean, nullable=False, default=False)
    remaining_balance = Column(Numeric(10, 2), nullable=True)
    initial_balance = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
