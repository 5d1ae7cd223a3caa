"""Venue-side collaborators read by the flash offer engine."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from otw_api.db.base import Base


class VenueTierEnum(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


class Venue(Base):
    __tablename__ = "venues"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(length=255), nullable=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    subscription_tier = Column(
        String(length=16),
        nullable=False,
        default=VenueTierEnum.FREE.value,
        server_default=VenueTierEnum.FREE.value,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class VenueFavorite(Base):
    __tablename__ = "venue_favorites"
    __table_args__ = (UniqueConstraint("user_id", "venue_id", name="uq_venue_favorites_user_venue"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    venue_id = Column(UUID(as_uuid=True), ForeignKey("venues.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CheckIn(Base):
    __tablename__ = "check_ins"
    __table_args__ = (Index("ix_check_ins_user_venue", "user_id", "venue_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    venue_id = Column(UUID(as_uuid=True), ForeignKey("venues.id", ondelete="CASCADE"), nullable=False)
    checked_in_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    checked_out_at = Column(DateTime(timezone=True), nullable=True)
