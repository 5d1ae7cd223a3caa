from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from otw_api.db.base import Base


class RateLimitScopeEnum(str, Enum):
    VENUE_SEND = "venue_send"
    USER_RECEIVE = "user_receive"


class RateLimitCounter(Base):
    """Per-day send counter; a new day_key starts a fresh row."""

    __tablename__ = "flash_offer_rate_limits"
    __table_args__ = (
        UniqueConstraint("scope", "subject_id", "day_key", name="uq_flash_offer_rate_limits_scope_subject_day"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    scope = Column(String(length=16), nullable=False)
    subject_id = Column(UUID(as_uuid=True), nullable=False)
    day_key = Column(String(length=10), nullable=False)
    count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
