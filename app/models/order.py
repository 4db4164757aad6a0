"""
Purchase attempts. One row per order id, never deleted.

Status only moves pending -> completed or pending -> failed.
"""
import enum
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Numeric, CheckConstraint
from sqlalchemy.sql import func

from .base import Base, JSONType


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    SHOPIER = "shopier"              # OAuth2 redirect checkout
    SHOPIER_LINK = "shopier_link"    # Shopier product link, confirmed by webhook
    FREE_DISCOUNT = "free_discount"  # zero-amount checkout


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_orders_amount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    user_email = Column(String(255), nullable=False, index=True)
    course_name = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = Column(String(32), nullable=False, default=PaymentMethod.SHOPIER.value)
    payment_id = Column(String(128), nullable=True)
    custom_data = Column(JSONType, nullable=False, default=dict)
    discount_code = Column(String(255), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    enrolled = Column(Boolean, nullable=True, default=False)
    enrollment_id = Column(Integer, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
