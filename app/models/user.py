from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from .base import Base


class User(Base):
    """Registered identity. id is the opaque identity-provider id (e.g. user_2abc...)"""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
