"""
Shopier payment processor integration.

Checkout: OAuth2 authorization-code flow. The buyer is redirected to the
authorize endpoint with the order context in `state`; Shopier redirects back
to /api/shopier-callback with a `code` that we exchange for a token.

Link sales: Shopier posts an automatic order notification (OSB) to
/api/shopier-webhook with loosely named form or JSON fields.

Payment return: Shopier sends the buyer to /api/shopier-return with the
payment result signed by HMAC-SHA256 under the API secret.

All Shopier request/response shapes stay in this module.
"""
import base64
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Any, Dict
from urllib.parse import urlencode, urlparse

import requests

from app.exceptions import GatewayError

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"success", "completed"}

# OSB field aliases, first present wins
ORDER_ID_FIELDS = ("order_id", "platform_order_id", "siparis_no")
EMAIL_FIELDS = ("buyer_email", "email", "alici_email")
NAME_FIELDS = ("buyer_name", "name")
AMOUNT_FIELDS = ("amount", "total_order_value", "tutar")
STATUS_FIELDS = ("status", "durum")
PRODUCT_ID_FIELDS = ("product_id", "product_sku", "sku", "urun_id", "page_id")
PRODUCT_URL_FIELDS = ("product_url", "link")


@dataclass(frozen=True)
class ShopierConfig:
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    redirect_uri: str
    scope: str = "payment"
    currency: str = "TRY"
    timeout: int = 15


@dataclass
class AuthorizationContext:
    """Order context embedded in the authorization redirect"""
    order_id: str
    state: str
    amount: str
    product_name: str
    buyer_name: str
    buyer_email: str
    buyer_phone: str = ""


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass
class TokenExchangeResult:
    grant: Optional[TokenGrant] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.grant is not None


@dataclass
class ShopierWebhookData:
    """Parsed OSB notification with the fields we care about"""
    order_id: Optional[str]
    buyer_email: Optional[str]
    buyer_name: Optional[str]
    product_id: Optional[str]
    amount: Optional[str]  # as sent; the caller validates it
    status: str
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return is_successful_status(self.status)


class ShopierGateway:
    """The only component that talks to Shopier over the network."""

    def __init__(self, config: ShopierConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def build_authorization_url(self, context: AuthorizationContext) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "state": context.state,
            "scope": self.config.scope,
            "amount": context.amount,
            "currency": self.config.currency,
            "order_id": context.order_id,
            "product_name": context.product_name,
            "buyer_name": context.buyer_name,
            "buyer_email": context.buyer_email,
            "buyer_phone": context.buyer_phone,
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    def exchange_code_for_token(self, code: str, state: str) -> TokenExchangeResult:
        """
        Exchange an authorization code for an access token.

        Never raises: transport and processor failures come back as
        TokenExchangeResult.error.
        """
        if not code:
            return TokenExchangeResult(error=GatewayError("Missing authorization code", code="missing_code"))

        try:
            resp = self.session.post(
                self.config.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "state": state,
                },
                headers={"Accept": "application/json"},
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            logger.error("Shopier token request failed: %s", e)
            return TokenExchangeResult(error=GatewayError(f"Token request failed: {e}", code="token_request_failed"))

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code != 200:
            message = _processor_message(body) or resp.text or f"HTTP {resp.status_code}"
            logger.error("Shopier token exchange rejected (%s): %s", resp.status_code, message)
            return TokenExchangeResult(error=GatewayError(message, code="token_exchange_failed"))

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            message = _processor_message(body) or "Token response without access_token"
            logger.error("Shopier token exchange returned no token: %s", message)
            return TokenExchangeResult(error=GatewayError(message, code="token_exchange_failed"))

        expires_in = body.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return TokenExchangeResult(grant=TokenGrant(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=expires_in,
        ))


def _processor_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("error_description", "message", "error"):
        if body.get(key):
            return str(body[key])
    return None


def is_successful_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in SUCCESS_STATUSES


def validate_webhook_token(header_value: Optional[str], expected_token: str) -> bool:
    """When no token is configured, every notification is accepted"""
    if not expected_token:
        return True
    if not header_value:
        return False
    return header_value == expected_token


def compute_return_signature(params: Dict[str, Any], secret: str) -> str:
    """base64(HMAC-SHA256(secret, random_nr + platform_order_id + total_order_value + currency))"""
    message = "".join(str(params.get(key) or "") for key in ("random_nr", "platform_order_id", "total_order_value"))
    message += str(params.get("currency") or "0")
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_return_signature(params: Dict[str, Any], secret: str) -> bool:
    """
    Check the signature on a payment return.

    Unsigned returns, returns missing a signed field and deployments without
    an API secret are all rejected.
    """
    if not secret:
        logger.error("Shopier return received but no API secret is configured")
        return False
    signature = params.get("signature")
    if not signature:
        return False
    if not all(params.get(key) for key in ("random_nr", "platform_order_id", "total_order_value")):
        return False
    return hmac.compare_digest(compute_return_signature(params, secret), str(signature))


def extract_product_id_from_url(url: Optional[str]) -> Optional[str]:
    """Last numeric path segment, e.g. https://www.shopier.com/MyUNI/43968703 -> 43968703"""
    if not url:
        return None
    value = str(url).strip()
    if not value:
        return None
    path = urlparse(value).path if value.startswith("http") else value
    segments = [s for s in path.split("/") if s]
    if not segments:
        return None
    last = segments[-1]
    return last if re.fullmatch(r"\d+", last) else None


def _first(payload: Dict[str, Any], keys) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


def _text(value: Any) -> Optional[str]:
    return str(value).strip() if value is not None else None


def parse_webhook_payload(payload: Dict[str, Any]) -> ShopierWebhookData:
    """
    Normalize an OSB notification.

    Shopier has used English and Turkish field names over time, so every
    field is looked up through its aliases. Missing values come back as None;
    the caller decides what is required.
    """
    order_id = _first(payload, ORDER_ID_FIELDS)
    email = _first(payload, EMAIL_FIELDS)
    email = str(email).strip().lower() if email is not None else None

    name = _first(payload, NAME_FIELDS)
    if name is None and email:
        name = email.split("@")[0]

    product_id = _first(payload, PRODUCT_ID_FIELDS)
    if product_id is not None:
        product_id = str(product_id).strip()
    else:
        product_id = extract_product_id_from_url(_first(payload, PRODUCT_URL_FIELDS))

    status = _first(payload, STATUS_FIELDS)

    return ShopierWebhookData(
        order_id=_text(order_id),
        buyer_email=email or None,
        buyer_name=str(name) if name is not None else None,
        product_id=product_id,
        amount=_text(_first(payload, AMOUNT_FIELDS)),
        status=str(status).strip().lower() if status is not None else "",
        raw_payload=payload,
    )
