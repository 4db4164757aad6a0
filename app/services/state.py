"""
Opaque OAuth2 `state` blob carrying the order context through Shopier.

The blob is a Fernet token, so it is both signed and encrypted: the callback
can trust its contents without a database round-trip to rebuild them.
"""
import base64
import hashlib
import json
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.exceptions import InvalidState

STATE_FIELDS = ("orderId", "courseId", "userId", "email", "locale", "amount", "courseName")


def _derive_key(secret: str) -> bytes:
    """Derive a Fernet-compatible key from the configured secret via SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encode_state(data: dict, secret: Optional[str] = None) -> str:
    missing = [f for f in STATE_FIELDS if f not in data]
    if missing:
        raise ValueError(f"State is missing fields: {', '.join(missing)}")
    f = Fernet(_derive_key(secret or settings.state_secret_key))
    payload = json.dumps({k: data[k] for k in STATE_FIELDS}, separators=(",", ":"))
    return f.encrypt(payload.encode()).decode()


def decode_state(token: Optional[str], secret: Optional[str] = None, max_age: Optional[int] = None) -> dict:
    """Decode a state blob. Anything undecodable, tampered or expired raises InvalidState."""
    if not token:
        raise InvalidState("Missing state")

    f = Fernet(_derive_key(secret or settings.state_secret_key))
    ttl = max_age if max_age is not None else settings.state_max_age_seconds
    try:
        raw = f.decrypt(token.encode(), ttl=ttl)
        data = json.loads(raw)
    except (InvalidToken, ValueError, UnicodeError) as e:
        raise InvalidState("State could not be decoded") from e

    if not isinstance(data, dict) or any(field not in data for field in STATE_FIELDS):
        raise InvalidState("State is missing order context")
    return data
