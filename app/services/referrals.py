"""
Discount and referral ledger.

Two kinds of codes share the discount_codes table:
- plain discount codes (promotions, reward codes), counted by usage_count and
  optionally limited by a monetary remaining_balance;
- referral codes (is_referral=True), one per user, owned via influencer_id.

Applying a code at checkout only records who used it. Usage counts and
balances move after the payment is confirmed, through
apply_referral_side_effects, which runs at most once per order.
"""
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.discount_code import DiscountCode, DiscountType
from app.models.order import Order
from app.models.referral_usage import ReferralUsage

logger = logging.getLogger(__name__)

REFERRAL_MAX_USAGE = 99999
REFERRAL_VALIDITY_YEARS = 500
REWARD_PERCENTAGE = Decimal("15")
REWARD_VALIDITY_DAYS = 3
REWARD_PREFIX = "REWARD"
REFERRAL_PREFIX = "REF"


@dataclass
class LedgerResult:
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None


@dataclass
class DiscountCheck:
    success: bool
    error: Optional[str] = None
    allowed_discount: Decimal = Decimal("0")


@dataclass
class ReferralStats:
    total_referrals: int = 0
    successful_referrals: int = 0
    earned_discounts: int = 0
    pending_referrals: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def split_codes(codes: Optional[str]) -> List[str]:
    """'A, b ,C' -> ['A', 'B', 'C']"""
    if not codes:
        return []
    return [c.strip().upper() for c in str(codes).split(",") if c.strip()]


# ---------------------------------------------------------------------------
# Checkout-time validation
# ---------------------------------------------------------------------------

def _find_plain_code(db: Session, code: str) -> Optional[DiscountCode]:
    return db.query(DiscountCode).filter(
        DiscountCode.code == code.strip().upper(),
        DiscountCode.is_referral.is_(False),
    ).first()


def _unusable_reason(discount: Optional[DiscountCode]) -> Optional[str]:
    if discount is None:
        return "Geçersiz indirim kodu"
    if discount.valid_until is not None and discount.valid_until < date.today():
        return "Bu kodun geçerlilik süresi dolmuş"
    if discount.usage_count >= discount.max_usage:
        return "Bu kodun kullanım limiti dolmuş"
    return None


def validate_and_reserve_discount(
    db: Session,
    code: str,
    user_id: str,
    discount_amount,
    course_price,
) -> LedgerResult:
    """
    Check a plain discount code and mark it as used by `user_id`.

    remaining_balance is only read here. It is decremented after payment so
    abandoned checkouts never consume balance.
    """
    discount = _find_plain_code(db, code)
    error = _unusable_reason(discount)
    if error:
        return LedgerResult(success=False, error=error)

    if discount.has_balance_limit and discount.remaining_balance is not None:
        price = _to_decimal(course_price)
        if price <= 0:
            return LedgerResult(success=False, error="Kurs fiyatı belirtilmedi")

        remaining = _to_decimal(discount.remaining_balance)
        if remaining < _to_decimal(discount_amount):
            return LedgerResult(
                success=False,
                error=f"Bu kodun kalan bakiyesi yetersiz. Kalan bakiye: {remaining:.2f} TL",
            )

    discount.is_used = True
    discount.used_by = user_id
    discount.used_at = _now()
    db.commit()
    logger.info("Discount code %s applied by %s", discount.code, user_id)
    return LedgerResult(success=True, code=discount.code)


def code_discount_value(discount: DiscountCode, course_price: Decimal) -> Decimal:
    """
    What one code takes off `course_price`. Balance-limited codes give up to
    their remaining balance and ignore discount_amount.
    """
    if discount.has_balance_limit and discount.remaining_balance is not None:
        value = _to_decimal(discount.remaining_balance)
    elif discount.discount_type == DiscountType.FIXED.value:
        value = _to_decimal(discount.discount_amount)
    else:
        value = course_price * _to_decimal(discount.discount_amount) / 100
    return min(max(value, Decimal("0")), course_price)


def check_checkout_discounts(db: Session, codes: List[str], course_id: str, course_price: Decimal) -> DiscountCheck:
    """
    Re-check the codes a checkout claims against the ledger.

    Read only. allowed_discount is the most the codes together may take off
    the course price.
    """
    allowed = Decimal("0")
    for code in codes:
        discount = _find_plain_code(db, code)
        error = _unusable_reason(discount)
        if error:
            return DiscountCheck(success=False, error=f"{code}: {error}")
        if discount.applicable_courses and course_id not in discount.applicable_courses:
            return DiscountCheck(success=False, error=f"{code}: Bu kod bu kurs için geçerli değil")
        allowed += code_discount_value(discount, course_price)

    allowed = min(allowed, course_price).quantize(Decimal("0.01"))
    return DiscountCheck(success=True, allowed_discount=allowed)


# ---------------------------------------------------------------------------
# Referral codes
# ---------------------------------------------------------------------------

def _referral_code_for(user_id: str) -> str:
    """Stable per-user code: REF + first 8 id chars + 6 chars of a hash of the id"""
    prefix = user_id.replace("-", "").replace("_", "")[:8].upper()
    digest = hashlib.sha256(user_id.encode()).hexdigest()[:6].upper()
    return f"{REFERRAL_PREFIX}{prefix}{digest}"


def get_user_referral_code(db: Session, user_id: str) -> Optional[str]:
    code = db.query(DiscountCode).filter(
        DiscountCode.influencer_id == user_id,
        DiscountCode.is_referral.is_(True),
    ).first()
    return code.code if code else None


def create_referral_code(db: Session, user_id: str) -> LedgerResult:
    """Return the user's referral code, creating it on first call."""
    existing = get_user_referral_code(db, user_id)
    if existing:
        return LedgerResult(success=True, code=existing)

    referral = DiscountCode(
        code=_referral_code_for(user_id),
        discount_amount=Decimal("0"),
        discount_type=DiscountType.PERCENTAGE.value,
        valid_until=date(date.today().year + REFERRAL_VALIDITY_YEARS, 12, 31),
        applicable_courses=[],
        max_usage=REFERRAL_MAX_USAGE,
        usage_count=0,
        is_used=False,
        influencer_id=user_id,
        commission=Decimal("0"),
        is_referral=True,
    )
    db.add(referral)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Referral code collision for user %s", user_id)
        return LedgerResult(success=False, error="Referral kodu oluşturulamadı")

    logger.info("Created referral code %s for user %s", referral.code, user_id)
    return LedgerResult(success=True, code=referral.code)


def use_referral_code(db: Session, code: str, user_id: str) -> LedgerResult:
    """
    Record that `user_id` signed up through someone's referral code.
    The owner is rewarded only once the user completes a purchase.
    """
    referral = db.query(DiscountCode).filter(
        DiscountCode.code == code.strip().upper(),
        DiscountCode.is_referral.is_(True),
    ).first()

    if referral is None or not referral.influencer_id:
        return LedgerResult(success=False, error="Geçersiz referral kodu")

    if referral.influencer_id == user_id:
        return LedgerResult(success=False, error="Kendi referral kodunu kullanamazsın")

    referral.is_used = True
    referral.used_by = user_id
    referral.used_at = _now()
    db.commit()
    logger.info("Referral code %s used by %s", referral.code, user_id)
    return LedgerResult(success=True, code=referral.code)


def create_reward_code(db: Session, influencer_id: str) -> DiscountCode:
    """Single-use 15% code for a referral owner, valid for 3 days. Caller commits."""
    millis = str(int(time.time() * 1000))
    reward = DiscountCode(
        code=f"{REWARD_PREFIX}{influencer_id[:6].upper()}{millis[-4:]}",
        discount_amount=REWARD_PERCENTAGE,
        discount_type=DiscountType.PERCENTAGE.value,
        valid_until=date.today() + timedelta(days=REWARD_VALIDITY_DAYS),
        applicable_courses=[],
        max_usage=1,
        usage_count=0,
        is_used=False,
        influencer_id=influencer_id,
        commission=Decimal("0"),
        is_referral=False,
    )
    db.add(reward)
    db.flush()
    logger.info("Created reward code %s for referral owner %s", reward.code, influencer_id)
    return reward


def get_user_reward_codes(db: Session, user_id: str) -> List[DiscountCode]:
    return db.query(DiscountCode).filter(
        DiscountCode.influencer_id == user_id,
        DiscountCode.is_referral.is_(False),
        DiscountCode.code.like(f"{REWARD_PREFIX}%"),
    ).order_by(DiscountCode.created_at.desc()).all()


def get_referral_stats(db: Session, user_id: str) -> ReferralStats:
    referral = db.query(DiscountCode).filter(
        DiscountCode.influencer_id == user_id,
        DiscountCode.is_referral.is_(True),
    ).first()
    if referral is None:
        return ReferralStats()

    successful = db.query(ReferralUsage).filter(ReferralUsage.referral_code_id == referral.id).count()
    earned = len(get_user_reward_codes(db, user_id))
    pending = 1 if referral.is_used and successful == 0 else 0
    return ReferralStats(
        total_referrals=successful + pending,
        successful_referrals=successful,
        earned_discounts=earned,
        pending_referrals=pending,
    )


# ---------------------------------------------------------------------------
# Post-payment side effects
# ---------------------------------------------------------------------------

def _consume_discount_codes(db: Session, user_id: str, order: Order) -> None:
    """Count the plain codes applied to this order and draw down balance-limited ones."""
    codes = split_codes(order.discount_code)
    if not codes:
        return

    discounts = db.query(DiscountCode).filter(
        DiscountCode.code.in_(codes),
        DiscountCode.is_referral.is_(False),
    ).all()

    order_discount = _to_decimal(order.discount_amount)
    for discount in discounts:
        if discount.used_by and discount.used_by != user_id:
            logger.warning("Discount code %s on order %s was reserved by %s, not %s",
                           discount.code, order.order_id, discount.used_by, user_id)

        if discount.usage_count >= discount.max_usage:
            logger.warning("Discount code %s already at max usage (%s)", discount.code, discount.max_usage)
        else:
            discount.usage_count += 1

        if discount.has_balance_limit and discount.remaining_balance is not None and order_discount > 0:
            remaining = _to_decimal(discount.remaining_balance) - order_discount
            discount.remaining_balance = max(Decimal("0"), remaining)
            logger.info("Discount code %s balance now %s", discount.code, discount.remaining_balance)


def _reward_referrer(db: Session, user_id: str) -> tuple:
    """Credit the referral code `user_id` redeemed, if any. Returns (referral, reward)."""
    referral = db.query(DiscountCode).filter(
        DiscountCode.used_by == user_id,
        DiscountCode.is_referral.is_(True),
        DiscountCode.is_used.is_(True),
    ).order_by(DiscountCode.used_at.desc()).first()

    if referral is None or not referral.influencer_id:
        return None, None

    if referral.usage_count < referral.max_usage:
        referral.usage_count += 1
    reward = create_reward_code(db, referral.influencer_id)
    return referral, reward


def apply_referral_side_effects(db: Session, user_id: str, order: Order) -> bool:
    """
    Post-payment discount and referral bookkeeping for one order.

    Best effort: failures are logged and never propagate. The ReferralUsage
    row keyed by order id is inserted first, so a second call for the same
    order (duplicate callback, webhook after callback) changes nothing.
    Returns True if side effects were applied by this call.
    """
    try:
        ledger = ReferralUsage(order_id=order.order_id, user_id=user_id)
        with db.begin_nested():
            db.add(ledger)
            db.flush()
    except IntegrityError:
        logger.info("Referral side effects already applied for order %s", order.order_id)
        return False
    except Exception as e:
        logger.error("Referral ledger write failed for order %s: %s", order.order_id, e)
        return False

    try:
        with db.begin_nested():
            _consume_discount_codes(db, user_id, order)
            referral, reward = _reward_referrer(db, user_id)
            if referral is not None:
                ledger.referral_code_id = referral.id
                ledger.reward_code = reward.code
            db.flush()
        db.commit()
    except Exception as e:
        logger.error("Referral side effects failed for order %s: %s", order.order_id, e)
        try:
            # Keep the ledger row: side effects run at most once per order
            db.commit()
        except Exception as commit_error:
            db.rollback()
            logger.error("Referral ledger commit failed for order %s: %s", order.order_id, commit_error)
        return False

    logger.info("Referral side effects applied for order %s (user %s)", order.order_id, user_id)
    return True
