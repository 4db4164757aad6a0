# Database models
from .base import Base
from .user import User
from .course import Course, CourseType
from .order import Order, OrderStatus, PaymentMethod
from .enrollment import Enrollment
from .discount_code import DiscountCode, DiscountType
from .referral_usage import ReferralUsage

__all__ = [
    "Base",
    "User",
    "Course",
    "CourseType",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "Enrollment",
    "DiscountCode",
    "DiscountType",
    "ReferralUsage",
]
