from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Time, func, true
from sqlalchemy.dialects.postgresql import UUID

from otw_api.db.base import Base


class DevicePlatformEnum(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class NotificationPreference(Base):
    """Per-user flash offer notification preferences."""

    __tablename__ = "notification_preferences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    flash_offers_enabled = Column(Boolean, nullable=False, default=True, server_default=true())
    quiet_hours_start = Column(Time, nullable=True)
    quiet_hours_end = Column(Time, nullable=True)
    timezone = Column(String(length=64), nullable=False, default="UTC", server_default="UTC")
    max_distance_miles = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(length=255), nullable=False, unique=True)
    platform = Column(String(length=16), nullable=False, default=DevicePlatformEnum.IOS.value)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
