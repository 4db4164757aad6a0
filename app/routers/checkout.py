"""
Shopier checkout: order creation, OAuth2 callback, signed payment return,
order lookup and deferred sync of link purchases.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.checkout import CreateOrderRequest, CreateOrderResponse, OrderLookupResponse, SyncResponse
from app.auth.dependencies import get_current_user, get_optional_user
from app.integrations.shopier import ShopierGateway, ShopierConfig
from app.services import orders
from app.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Checkout"])


def get_gateway() -> ShopierGateway:
    return ShopierGateway(ShopierConfig(
        client_id=settings.shopier_client_id,
        client_secret=settings.shopier_client_secret,
        authorize_url=settings.shopier_authorize_url,
        token_url=settings.shopier_token_url,
        redirect_uri=settings.shopier_redirect_uri,
        scope=settings.shopier_scope,
        currency=settings.shopier_currency,
    ))


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return (
        request.headers.get("x-real-ip")
        or request.headers.get("cf-connecting-ip")
        or (request.client.host if request.client else None)
    )


async def _read_params(request: Request) -> dict:
    """Query string, overlaid with the form body on POST"""
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@router.post("/shopier-payment", response_model=CreateOrderResponse)
def create_payment(
    data: CreateOrderRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: ShopierGateway = Depends(get_gateway),
    user: Optional[User] = Depends(get_optional_user),
):
    """
    Create an order. Free orders come back with redirectToDirect=True and the
    success page URL; paid orders with the Shopier authorization URL.
    """
    result = orders.create_order(
        db,
        gateway,
        data,
        authenticated_user_id=user.id if user else None,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return CreateOrderResponse(
        orderId=result.order_id,
        redirectUrl=result.redirect_url,
        redirectToDirect=result.redirect_to_direct,
        enrollmentSuccess=result.enrollment_success,
        userIdUsed=result.user_id_used,
    )


@router.api_route("/shopier-callback", methods=["GET", "POST"])
async def shopier_callback(
    request: Request,
    db: Session = Depends(get_db),
    gateway: ShopierGateway = Depends(get_gateway),
):
    """Browser redirect target after Shopier authorization. Always answers with a redirect."""
    params = await _read_params(request)
    target = await run_in_threadpool(
        orders.reconcile_callback,
        db,
        gateway,
        code=params.get("code"),
        state=params.get("state"),
        error=params.get("error"),
    )
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


@router.api_route("/shopier-return", methods=["GET", "POST"])
async def shopier_return(
    request: Request,
    db: Session = Depends(get_db),
):
    """Signed payment result from Shopier. Always answers with a 303 redirect."""
    params = await _read_params(request)
    logger.info("Shopier return received for order %s", params.get("platform_order_id"))
    target = await run_in_threadpool(orders.reconcile_return, db, params, settings.shopier_api_secret)
    return RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/order-by-id", response_model=OrderLookupResponse)
def order_by_id(
    order_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    order = orders.get_order_summary(db, order_id)
    return OrderLookupResponse(courseId=order.course_id, courseName=order.course_name, status=order.status)


@router.post("/sync-pending-shopier-orders", response_model=SyncResponse)
def sync_pending_orders(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Enroll the caller in link purchases made with their email before they registered."""
    synced = orders.deferred_sync(db, user)
    return SyncResponse(synced=synced)
