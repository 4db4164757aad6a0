"""
Order reconciliation workflow.

Paths into a completed order:
- checkout (create_order): zero-amount orders complete immediately, paid
  orders redirect to Shopier with the order context in a signed state blob;
- callback (reconcile_callback): Shopier redirects back with an auth code,
  we exchange it and complete the order;
- return (reconcile_return): Shopier redirects back with a signed payment
  result, which completes or fails the order;
- webhook (reconcile_webhook): Shopier link sales notify us server-to-server,
  identified by product id and buyer email only;
- deferred sync (deferred_sync): webhook orders placed by guests are enrolled
  once the buyer registers with the same email.

Every completed order ends in exactly one active enrollment for its buyer and
course, referral side effects at most once, and a best-effort email.
Order.status and Order.enrolled are only written from this module.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import InvalidRequest, NotFound, PersistenceError, InvalidState
from app.integrations.shopier import (
    ShopierGateway,
    AuthorizationContext,
    ShopierWebhookData,
    is_successful_status,
    parse_webhook_payload,
    verify_return_signature,
)
from app.models.course import Course
from app.models.order import Order, OrderStatus, PaymentMethod
from app.models.user import User
from app.schemas.checkout import CreateOrderRequest
from app.services import notifications, referrals
from app.services.enrollment import ensure_enrollment
from app.services.identity import (
    BuyerIdentity,
    normalize_email,
    resolve_identity,
    lookup_identity_by_email,
)
from app.services.state import encode_state, decode_state

logger = logging.getLogger(__name__)

CHECKOUT_ORDER_PREFIX = "MYU"
WEBHOOK_ORDER_PREFIX = "SHOPIER"
SUPPORTED_LOCALES = {"tr", "en"}
MAX_AMOUNT = Decimal("99999999.99")
AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class CheckoutResult:
    order_id: str
    redirect_url: str
    redirect_to_direct: bool = False
    enrollment_success: Optional[bool] = None
    user_id_used: Optional[str] = None


@dataclass
class WebhookOutcome:
    order_id: str
    course_id: str
    duplicate: bool = False
    enrolled: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_order_id(prefix: str = CHECKOUT_ORDER_PREFIX) -> str:
    """<prefix>-<epoch ms>-<0..9999>"""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.randbelow(10000)}"


def _locale(value: Optional[str]) -> str:
    return value if value in SUPPORTED_LOCALES else settings.default_locale


def _site_url(locale: str, page: str, params: dict) -> str:
    return f"{settings.base_url.rstrip('/')}/{locale}/{page}?{urlencode(params)}"


def success_url(locale: str, **params) -> str:
    return _site_url(locale, "payment-success", params)


def failure_url(locale: str, error: str, order_id: Optional[str] = None) -> str:
    params = {"error": error}
    if order_id:
        params["orderId"] = order_id
    return _site_url(locale, "payment-failed", params)


def _get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.order_id == order_id).first()


def _get_course(db: Session, course_id: str) -> Optional[Course]:
    return db.query(Course).filter(Course.id == course_id).first()


def _parse_amount(value, fallback) -> Decimal:
    """Non-negative, finite, fits Numeric(10, 2). Anything else is InvalidRequest."""
    raw = fallback if value is None else value
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidRequest("Geçersiz tutar")
    if not amount.is_finite() or amount > MAX_AMOUNT:
        raise InvalidRequest("Geçersiz tutar")
    if amount < 0:
        raise InvalidRequest("Tutar negatif olamaz")
    return amount.quantize(Decimal("0.01"))


def _complete(order: Order, payment_method: Optional[str] = None) -> bool:
    """pending -> completed. Returns False if the order is already terminal."""
    if order.status != OrderStatus.PENDING.value:
        return False
    order.status = OrderStatus.COMPLETED.value
    if payment_method:
        order.payment_method = payment_method
    return True


def mark_order_failed(db: Session, order_id: str, reason: str) -> Optional[Order]:
    """
    pending -> failed. Safe to call repeatedly; completed orders are left
    alone since status never moves backwards.
    """
    order = _get_order(db, order_id)
    if order is None:
        logger.warning("Cannot mark unknown order %s as failed", order_id)
        return None

    if order.status == OrderStatus.COMPLETED.value:
        logger.warning("Order %s is completed, ignoring failure: %s", order_id, reason)
        return order

    if order.status == OrderStatus.PENDING.value:
        order.status = OrderStatus.FAILED.value
        order.notes = reason
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to mark order %s as failed: %s", order_id, e)
            return order
        logger.info("Order %s marked failed: %s", order_id, reason)
    return order


def _enroll_order(db: Session, order: Order, user_key: str) -> None:
    """Ensure the enrollment and link it to the order. Raises SQLAlchemyError."""
    result = ensure_enrollment(db, user_key, order.course_id)
    order.enrolled = True
    order.enrollment_id = result.enrollment_id
    db.commit()
    logger.info("Order %s enrollment %s (%s)", order.order_id, result.enrollment_id, result.outcome)


def _notify(db: Session, order: Order, buyer_name: Optional[str], locale: str, is_free: bool = False) -> None:
    """Best effort: the order is already settled, so a failure here only costs the email."""
    order_id = order.order_id
    try:
        course = _get_course(db, order.course_id)
        notifications.send_purchase_confirmation(
            email=order.user_email,
            name=buyer_name or (order.custom_data or {}).get("userName") or "",
            course_title=course.title if course else (order.course_name or ""),
            course_slug=course.slug if course else None,
            order_id=order_id,
            amount=f"{Decimal(str(order.amount or 0)):.2f}",
            locale=locale,
            course_type=course.course_type if course else "online",
            is_free=is_free,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Confirmation for order %s skipped, course lookup failed: %s", order_id, e)
    except Exception as e:
        logger.error("Confirmation for order %s failed: %s", order_id, e)


def _finalize_paid_order(
    db: Session,
    order: Order,
    user_key: str,
    buyer_name: Optional[str],
    locale: str,
) -> bool:
    """
    Enrollment, referral side effects and notification for a completed order.

    Best effort: the payment is already recorded, so failures are logged and
    reported as enrolled=False rather than raised.
    """
    try:
        _enroll_order(db, order, user_key)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Enrollment failed for order %s (user %s): %s", order.order_id, user_key, e)
        return False

    referrals.apply_referral_side_effects(db, user_key, order)
    _notify(db, order, buyer_name, locale)
    return True


# ---------------------------------------------------------------------------
# CreateOrder
# ---------------------------------------------------------------------------

def _verify_discount(db: Session, course: Course, price: Decimal, codes: list, claimed) -> Decimal:
    """The claimed total discount, once the ledger confirms the codes cover it."""
    total_discount = _parse_amount(claimed, 0)
    if not codes:
        if total_discount > 0:
            raise InvalidRequest("İndirim kodu olmadan indirim uygulanamaz")
        return total_discount

    check = referrals.check_checkout_discounts(db, codes, course.id, price)
    if not check.success:
        raise InvalidRequest(check.error)
    if total_discount > check.allowed_discount + AMOUNT_TOLERANCE:
        logger.warning("Checkout for course %s claimed %s off with %s, codes allow %s",
                       course.id, total_discount, codes, check.allowed_discount)
        raise InvalidRequest("İndirim tutarı kodların izin verdiğinden fazla")
    return total_discount


def create_order(
    db: Session,
    gateway: ShopierGateway,
    data: CreateOrderRequest,
    authenticated_user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> CheckoutResult:
    """
    Record a purchase intent and decide where the buyer goes next.

    Zero-amount orders are completed and enrolled on the spot without
    touching Shopier; paid orders get an authorization redirect.
    An amount below the course price is only accepted when the discount
    codes on the order, checked against the ledger, cover the difference.
    """
    course_id = (data.courseId or "").strip()
    email = normalize_email(data.email)
    name = (data.name or "").strip()
    if not course_id or not email or not name:
        raise InvalidRequest("Gerekli parametreler eksik (courseId, email, name)")

    course = db.query(Course).filter(
        Course.id == course_id,
        Course.is_active.is_(True),
    ).first()
    if course is None:
        raise NotFound("Kurs bulunamadı veya aktif değil")

    price = _parse_amount(course.price, 0)
    codes = referrals.split_codes(data.discountCodes)
    total_discount = _verify_discount(db, course, price, codes, data.totalDiscount)
    amount = _parse_amount(data.amount, price)
    if amount > price:
        raise InvalidRequest("Tutar kurs fiyatını aşamaz")
    if amount + total_discount + AMOUNT_TOLERANCE < price:
        raise InvalidRequest("Tutar indirimlerle uyuşmuyor")

    locale = _locale(data.locale)
    claimed_user_id = data.clerkUserId or data.userId
    identity = resolve_identity(email, authenticated_user_id, claimed_user_id)

    order_id = generate_order_id()
    order = Order(
        order_id=order_id,
        course_id=course.id,
        user_email=email,
        course_name=course.title,
        amount=amount,
        status=OrderStatus.PENDING.value,
        payment_method=PaymentMethod.SHOPIER.value,
        custom_data={
            "clerkUserId": claimed_user_id,
            "userId": identity.key,
            "locale": locale,
            "discountCodes": ",".join(codes),
            "totalDiscount": float(total_discount),
            "referralCode": data.referralCode or "",
            "userPhone": data.phone or "",
            "userName": name,
            "userAddress": data.address or "",
            "userCity": data.city or "",
            "userNotes": data.notes or "",
        },
        discount_code=",".join(codes),
        discount_amount=total_discount,
        enrolled=False,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    try:
        db.add(order)
        db.commit()
        db.refresh(order)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to save order %s: %s", order_id, e)
        raise PersistenceError("Sipariş kaydedilirken hata oluştu") from e

    logger.info("Order %s created for course %s (amount %s, user %s)", order_id, course.id, amount, identity.key)

    if amount <= 0:
        return _complete_free_order(db, order, course, identity, name, locale)

    state = encode_state({
        "orderId": order_id,
        "courseId": course.id,
        "userId": identity.key,
        "email": email,
        "locale": locale,
        "amount": f"{amount:.2f}",
        "courseName": course.title,
    })
    redirect_url = gateway.build_authorization_url(AuthorizationContext(
        order_id=order_id,
        state=state,
        amount=f"{amount:.2f}",
        product_name=course.title,
        buyer_name=name,
        buyer_email=email,
        buyer_phone=data.phone or "",
    ))
    return CheckoutResult(order_id=order_id, redirect_url=redirect_url, user_id_used=identity.key)


def _complete_free_order(
    db: Session,
    order: Order,
    course: Course,
    identity: BuyerIdentity,
    buyer_name: str,
    locale: str,
) -> CheckoutResult:
    _complete(order, PaymentMethod.FREE_DISCOUNT.value)
    try:
        _enroll_order(db, order, identity.key)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Free enrollment failed for order %s: %s", order.order_id, e)
        raise PersistenceError("Kursa kaydedilirken bir hata oluştu") from e

    referrals.apply_referral_side_effects(db, identity.key, order)
    _notify(db, order, buyer_name, locale, is_free=True)

    redirect_url = success_url(
        locale,
        courseId=course.id,
        name=course.title,
        free="true",
        orderId=order.order_id,
    )
    return CheckoutResult(
        order_id=order.order_id,
        redirect_url=redirect_url,
        redirect_to_direct=True,
        enrollment_success=True,
        user_id_used=identity.key,
    )


# ---------------------------------------------------------------------------
# ReconcileCallback
# ---------------------------------------------------------------------------

def reconcile_callback(
    db: Session,
    gateway: ShopierGateway,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str] = None,
) -> str:
    """
    Handle Shopier's browser redirect and return where to send the buyer.

    Never raises: every outcome is a success or failure page URL. Failure
    pages carry a short error code, never processor text.
    """
    try:
        context = decode_state(state)
    except InvalidState as e:
        logger.warning("Rejected Shopier callback: %s", e.message)
        return failure_url(settings.default_locale, e.code)

    order_id = context["orderId"]
    locale = _locale(context.get("locale"))

    if error:
        logger.info("Shopier authorization for order %s returned error: %s", order_id, error)
        mark_order_failed(db, order_id, f"Authorization error: {error}")
        return failure_url(locale, "payment_cancelled", order_id)

    order = _get_order(db, order_id)
    if order is None:
        logger.error("Shopier callback for unknown order %s", order_id)
        return failure_url(locale, "order_not_found", order_id)

    if order.status == OrderStatus.FAILED.value:
        logger.warning("Shopier callback for failed order %s", order_id)
        return failure_url(locale, "order_closed", order_id)

    if order.status == OrderStatus.PENDING.value:
        result = gateway.exchange_code_for_token(code, state)
        if not result.ok:
            mark_order_failed(db, order_id, f"Token exchange failed: {result.error.message}")
            return failure_url(locale, result.error.code, order_id)

        _complete(order)
        order.custom_data = {
            **(order.custom_data or {}),
            "oauth": {
                "accessToken": result.grant.access_token,
                "refreshToken": result.grant.refresh_token,
                "expiresIn": result.grant.expires_in,
            },
        }
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to complete order %s: %s", order_id, e)
            return failure_url(locale, PersistenceError.code, order_id)
        logger.info("Order %s completed via Shopier callback", order_id)
    else:
        logger.info("Duplicate Shopier callback for completed order %s", order_id)

    course_id, course_name = order.course_id, order.course_name
    if order.enrolled:
        enrolled = True
    else:
        buyer_name = (order.custom_data or {}).get("userName")
        enrolled = _finalize_paid_order(db, order, context["userId"], buyer_name, locale)

    return success_url(
        locale,
        orderId=order_id,
        courseId=course_id,
        enrolled=str(enrolled).lower(),
        name=course_name or context.get("courseName", ""),
    )


# ---------------------------------------------------------------------------
# ReconcileReturn
# ---------------------------------------------------------------------------

def reconcile_return(db: Session, params: dict, secret: str) -> str:
    """
    Handle Shopier's signed payment return and return where to send the buyer.

    Nothing is read or written until the signature checks out. The signed
    total must match the order amount. Never raises.
    """
    if not verify_return_signature(params, secret):
        logger.warning("Rejected Shopier return for order %s: bad signature", params.get("platform_order_id"))
        return failure_url(settings.default_locale, "invalid_signature")

    order_id = str(params["platform_order_id"]).strip()
    payment_id = params.get("payment_id") or None
    order = _get_order(db, order_id)
    if order is None:
        logger.error("Shopier return for unknown order %s", order_id)
        return failure_url(settings.default_locale, "order_not_found", order_id)

    context = order.custom_data or {}
    locale = _locale(context.get("locale"))

    try:
        signed_total = _parse_amount(params.get("total_order_value"), None)
    except InvalidRequest:
        signed_total = None
    if signed_total != Decimal(str(order.amount)).quantize(Decimal("0.01")):
        logger.error("Shopier return for order %s carries total %s, order amount is %s",
                     order_id, params.get("total_order_value"), order.amount)
        return failure_url(locale, "amount_mismatch", order_id)

    status = params.get("status")
    if not is_successful_status(status):
        if order.status == OrderStatus.PENDING.value:
            order.payment_id = payment_id
        mark_order_failed(db, order_id, f"Payment failed with status: {status}")
        return failure_url(locale, "payment_failed", order_id)

    if order.status == OrderStatus.FAILED.value:
        logger.warning("Shopier return for failed order %s", order_id)
        return failure_url(locale, "order_closed", order_id)

    if _complete(order, PaymentMethod.SHOPIER.value):
        order.payment_id = payment_id
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to complete order %s: %s", order_id, e)
            return failure_url(locale, PersistenceError.code, order_id)
        logger.info("Order %s completed via Shopier return (payment %s)", order_id, payment_id)
    else:
        logger.info("Duplicate Shopier return for completed order %s", order_id)

    course_id, course_name = order.course_id, order.course_name
    if order.enrolled:
        enrolled = True
    else:
        user_key = context.get("userId") or context.get("clerkUserId") or order.user_email
        enrolled = _finalize_paid_order(db, order, user_key, context.get("userName"), locale)

    params_out = {"orderId": order_id}
    if payment_id:
        params_out["paymentId"] = payment_id
    params_out.update(courseId=course_id, enrolled=str(enrolled).lower(), name=course_name or "")
    return success_url(locale, **params_out)


# ---------------------------------------------------------------------------
# ReconcileWebhook
# ---------------------------------------------------------------------------

def _lookup_identity(db: Session, email: str) -> BuyerIdentity:
    try:
        return lookup_identity_by_email(db, email)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Identity lookup failed for %s, treating as guest: %s", email, e)
        return resolve_identity(email)


def _handle_duplicate_delivery(db: Session, order: Order, data: ShopierWebhookData) -> WebhookOutcome:
    """Repeat notification for a known order: never re-insert, only catch up on enrollment."""
    logger.info("Duplicate Shopier notification for order %s", order.order_id)
    enrolled = bool(order.enrolled)

    if enrolled or not data.is_successful or order.status == OrderStatus.FAILED.value:
        return WebhookOutcome(order.order_id, order.course_id, duplicate=True, enrolled=enrolled)

    identity = _lookup_identity(db, data.buyer_email)
    if not identity.is_registered:
        return WebhookOutcome(order.order_id, order.course_id, duplicate=True, enrolled=False)

    if _complete(order):
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("Failed to update order") from e

    enrolled = _finalize_paid_order(db, order, identity.key, data.buyer_name, "tr")
    return WebhookOutcome(order.order_id, order.course_id, duplicate=True, enrolled=enrolled)


def reconcile_webhook(
    db: Session,
    payload: dict,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> WebhookOutcome:
    """
    Record a Shopier link sale.

    The order is stored even when the buyer has no account yet; enrollment
    then waits for deferred_sync.
    """
    data = parse_webhook_payload(payload)

    if not data.buyer_email:
        raise InvalidRequest("Missing buyer email")
    if not data.product_id:
        raise InvalidRequest("Missing product identifier")
    amount = _parse_amount(data.amount, 0)

    order_id = data.order_id or generate_order_id(WEBHOOK_ORDER_PREFIX)

    existing = _get_order(db, order_id)
    if existing is not None:
        return _handle_duplicate_delivery(db, existing, data)

    course = db.query(Course).filter(
        Course.shopier_product_id == data.product_id,
        Course.is_active.is_(True),
    ).first()
    if course is None:
        logger.error("No course found for shopier_product_id %s", data.product_id)
        raise NotFound("No course mapped for this product")

    identity = _lookup_identity(db, data.buyer_email)

    order = Order(
        order_id=order_id,
        course_id=course.id,
        user_email=data.buyer_email,
        course_name=course.title,
        amount=amount,
        status=OrderStatus.COMPLETED.value if data.is_successful else OrderStatus.PENDING.value,
        payment_method=PaymentMethod.SHOPIER_LINK.value,
        custom_data={
            "clerkUserId": identity.key if identity.is_registered else None,
            "userId": identity.key,
            "locale": "tr",
            "userName": data.buyer_name,
            "source": "shopier_webhook",
        },
        discount_amount=Decimal("0"),
        enrolled=False,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    try:
        db.add(order)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _get_order(db, order_id)
        if existing is None:
            logger.error("Order insert for %s failed with integrity error", order_id)
            raise PersistenceError("Failed to save order")
        return _handle_duplicate_delivery(db, existing, data)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Order insert error for %s: %s", order_id, e)
        raise PersistenceError("Failed to save order") from e

    logger.info("Shopier link order %s recorded for course %s (%s, registered=%s)",
                order_id, course.id, order.status, identity.is_registered)

    enrolled = False
    if identity.is_registered and data.is_successful:
        enrolled = _finalize_paid_order(db, order, identity.key, data.buyer_name, "tr")

    return WebhookOutcome(order_id=order_id, course_id=course.id, enrolled=enrolled)


# ---------------------------------------------------------------------------
# DeferredSync and lookups
# ---------------------------------------------------------------------------

def deferred_sync(db: Session, user: User) -> int:
    """
    Enroll a newly registered user in the Shopier link purchases made with
    their email before they had an account. Returns the number of orders synced.
    """
    email = normalize_email(user.email)
    if not email:
        raise InvalidRequest("No email")

    orders = db.query(Order).filter(
        Order.user_email == email,
        Order.status == OrderStatus.COMPLETED.value,
        Order.payment_method == PaymentMethod.SHOPIER_LINK.value,
        or_(Order.enrolled.is_(None), Order.enrolled.is_(False)),
    ).all()

    synced = 0
    for order in orders:
        order.custom_data = {**(order.custom_data or {}), "clerkUserId": user.id, "userId": user.id}
        try:
            _enroll_order(db, order, user.id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Deferred sync failed for order %s: %s", order.order_id, e)
            continue
        referrals.apply_referral_side_effects(db, user.id, order)
        synced += 1

    if synced:
        logger.info("Deferred sync linked %s order(s) to user %s", synced, user.id)
    return synced


def get_order_summary(db: Session, order_id: Optional[str]) -> Order:
    order_id = (order_id or "").strip()
    if not order_id:
        raise InvalidRequest("Missing order_id")

    try:
        order = _get_order(db, order_id)
    except SQLAlchemyError as e:
        logger.error("Order lookup failed for %s: %s", order_id, e)
        raise PersistenceError("Order lookup failed") from e

    if order is None:
        raise NotFound("Order not found")
    return order
