from pydantic import BaseModel
from typing import Optional
from datetime import date, datetime


class DiscountUsageRequest(BaseModel):
    code: Optional[str] = None
    userId: Optional[str] = None
    discountAmount: float = 0
    coursePrice: Optional[float] = None


class LedgerResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class ReferralUseRequest(BaseModel):
    code: Optional[str] = None


class ReferralActionRequest(BaseModel):
    action: Optional[str] = None


class ReferralStatsOut(BaseModel):
    totalReferrals: int
    successfulReferrals: int
    earnedDiscounts: int
    pendingReferrals: int


class RewardCodeOut(BaseModel):
    code: str
    discount_amount: float
    discount_type: str
    valid_until: Optional[date] = None
    is_used: bool
    usage_count: int
    max_usage: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

