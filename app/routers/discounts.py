"""
Discount code reservation and referral program endpoints.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.discounts import (
    DiscountUsageRequest,
    LedgerResponse,
    ReferralUseRequest,
    ReferralActionRequest,
    ReferralStatsOut,
    RewardCodeOut,
)
from app.auth.dependencies import get_current_user
from app.exceptions import InvalidRequest
from app.services import referrals

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Discounts"])


@router.post("/discount-usage", response_model=LedgerResponse)
def discount_usage(
    data: DiscountUsageRequest,
    db: Session = Depends(get_db),
):
    """
    Apply a discount code at checkout. Validation failures come back as
    200 with success=false so the form can show the message inline.
    """
    if not data.code or not data.userId:
        raise InvalidRequest("Kod ve kullanıcı ID gerekli")

    result = referrals.validate_and_reserve_discount(
        db, data.code, data.userId, data.discountAmount, data.coursePrice,
    )
    if not result.success:
        return LedgerResponse(success=False, error=result.error)
    return LedgerResponse(success=True, message="İndirim kodu başarıyla kullanıldı", code=result.code)


@router.post("/referral-usage", response_model=LedgerResponse)
def referral_usage(
    data: ReferralUseRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not data.code:
        raise InvalidRequest("Referral kodu gerekli")

    result = referrals.use_referral_code(db, data.code, user.id)
    if not result.success:
        return LedgerResponse(success=False, error=result.error)
    return LedgerResponse(success=True, message="Referral kodu başarıyla kullanıldı", code=result.code)


@router.get("/referral")
def referral_data(
    action: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if action == "stats":
        stats = referrals.get_referral_stats(db, user.id)
        return {
            "success": True,
            "stats": ReferralStatsOut(
                totalReferrals=stats.total_referrals,
                successfulReferrals=stats.successful_referrals,
                earnedDiscounts=stats.earned_discounts,
                pendingReferrals=stats.pending_referrals,
            ).model_dump(),
        }

    if action == "code":
        return {"success": True, "referralCode": referrals.get_user_referral_code(db, user.id)}

    if action == "rewards":
        codes = referrals.get_user_reward_codes(db, user.id)
        return {
            "success": True,
            "rewards": [RewardCodeOut.model_validate(c).model_dump(mode="json") for c in codes],
        }

    raise InvalidRequest("Geçersiz işlem")


@router.post("/referral", response_model=LedgerResponse)
def referral_action(
    data: ReferralActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if data.action != "create":
        raise InvalidRequest("Geçersiz işlem")

    result = referrals.create_referral_code(db, user.id)
    if not result.success:
        return LedgerResponse(success=False, error=result.error)
    return LedgerResponse(success=True, message="Referral kodu oluşturuldu", code=result.code)
