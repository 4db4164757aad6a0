"""
Buyer identity resolution.

A buyer is either a registered identity-provider user (opaque id) or a guest
known only by email. Enrollments and order metadata are keyed by `key`, so a
guest's purchases live under the email until DeferredSync relinks them to the
registered id.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuestIdentity:
    email: str

    @property
    def key(self) -> str:
        return self.email

    @property
    def is_registered(self) -> bool:
        return False


@dataclass(frozen=True)
class RegisteredIdentity:
    user_id: str
    email: Optional[str] = None

    @property
    def key(self) -> str:
        return self.user_id

    @property
    def is_registered(self) -> bool:
        return True


BuyerIdentity = Union[GuestIdentity, RegisteredIdentity]


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = str(email).strip().lower()
    return email or None


def looks_like_email(value: Optional[str]) -> bool:
    return bool(value) and "@" in value


def resolve_identity(
    email: str,
    authenticated_user_id: Optional[str] = None,
    claimed_user_id: Optional[str] = None,
) -> BuyerIdentity:
    """
    Pick the identity an order is recorded under.

    An authenticated id wins; then a caller-supplied id unless it is really an
    email; otherwise the buyer is a guest keyed by email.
    """
    if authenticated_user_id:
        return RegisteredIdentity(user_id=authenticated_user_id, email=email)

    if claimed_user_id and not looks_like_email(claimed_user_id):
        return RegisteredIdentity(user_id=claimed_user_id, email=email)

    if claimed_user_id:
        logger.warning("Caller identity %s looks like an email, using guest checkout", claimed_user_id)
    return GuestIdentity(email=email)


def lookup_identity_by_email(db: Session, email: str) -> BuyerIdentity:
    """Map an email to a registered identity, or a guest if nobody registered with it."""
    normalized = normalize_email(email)
    user = db.query(User).filter(User.email == normalized).first()
    if user:
        return RegisteredIdentity(user_id=user.id, email=normalized)
    return GuestIdentity(email=normalized)
