"""
Shopier automatic order notification (OSB) receiver.

Shopier posts link sales here. The payload may arrive as JSON or as a form,
and repeated deliveries of the same order are answered without side effects.
"""
import json
import logging
from urllib.parse import parse_qsl
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.webhooks import WebhookResponse, WebhookPing
from app.integrations.shopier import validate_webhook_token
from app.routers.checkout import client_ip
from app.services import orders
from app.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Webhooks"])


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        return payload

    if "form" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}

    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return dict(parse_qsl(raw))


@router.get("/shopier-webhook", response_model=WebhookPing)
def shopier_webhook_ping():
    return WebhookPing(message="Shopier webhook endpoint is active")


@router.post("/shopier-webhook", response_model=WebhookResponse)
async def shopier_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Record a Shopier link sale and enroll the buyer if they have an account.
    Guests are enrolled later through /api/sync-pending-shopier-orders.
    """
    token = request.headers.get("X-Shopier-Token")
    if not validate_webhook_token(token, settings.shopier_webhook_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    payload = await _read_payload(request)
    logger.info("Shopier webhook received: %s", sorted(payload.keys()))

    outcome = await run_in_threadpool(
        orders.reconcile_webhook,
        db,
        payload,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return WebhookResponse(
        orderId=outcome.order_id,
        courseId=outcome.course_id,
        duplicate=outcome.duplicate or None,
        enrolled=outcome.enrolled,
    )
