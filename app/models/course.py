import enum
from sqlalchemy import Column, String, Text, Boolean, DateTime, Numeric
from sqlalchemy.sql import func

from .base import Base


class CourseType(str, enum.Enum):
    ONLINE = "online"
    LIVE = "live"


class Course(Base):
    """Purchasable course. shopier_product_id maps Shopier link sales to the course"""
    __tablename__ = "courses"

    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    course_type = Column(String(20), nullable=False, default=CourseType.ONLINE.value)
    shopier_product_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
