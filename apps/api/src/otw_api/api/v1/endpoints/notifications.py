from __future__ import annotations

from datetime import datetime, time, timezone
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.db.session import get_session
from otw_api.models.notification import DevicePlatformEnum, DeviceToken, NotificationPreference
from otw_api.models.user import User

router = APIRouter(prefix="/notifications", tags=["Notifications"])


class NotificationPreferenceResponse(BaseModel):
    user_id: UUID
    flash_offers_enabled: bool = Field(..., description="Whether flash offer pushes are enabled")
    quiet_hours_start: time | None = Field(default=None, description="Local start of the quiet window")
    quiet_hours_end: time | None = Field(default=None, description="Local end of the quiet window (exclusive)")
    timezone: str = Field(..., description="IANA timezone used for quiet hours")
    max_distance_miles: float | None = Field(default=None, description="Ignore offers farther than this")

    model_config = ConfigDict(from_attributes=True)


class NotificationPreferenceUpdateRequest(BaseModel):
    flash_offers_enabled: bool | None = None
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    timezone: str | None = None
    max_distance_miles: float | None = Field(default=None, gt=0)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class DeviceTokenRequest(BaseModel):
    user_id: UUID
    token: str = Field(..., min_length=1, max_length=255)
    platform: DevicePlatformEnum = DevicePlatformEnum.IOS


class DeviceTokenResponse(BaseModel):
    id: UUID
    user_id: UUID
    token: str
    platform: str
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# Columns the client may null out explicitly.
_NULLABLE_FIELDS = {"quiet_hours_start", "quiet_hours_end", "max_distance_miles"}


async def _ensure_user(session: AsyncSession, user_id: UUID) -> None:
    if await session.get(User, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


async def _ensure_preference(session: AsyncSession, user_id: UUID) -> NotificationPreference:
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    preference = result.scalar_one_or_none()
    if preference is not None:
        return preference

    await _ensure_user(session, user_id)
    preference = NotificationPreference(user_id=user_id, flash_offers_enabled=True, timezone="UTC")
    session.add(preference)
    await session.commit()
    await session.refresh(preference)
    return preference


@router.get(
    "/preferences/{user_id}",
    response_model=NotificationPreferenceResponse,
    status_code=status.HTTP_200_OK,
)
async def get_notification_preferences(
    user_id: UUID, session: AsyncSession = Depends(get_session)
) -> NotificationPreferenceResponse:
    """Fetch notification preferences for the user, creating defaults if necessary."""

    preference = await _ensure_preference(session, user_id)
    return NotificationPreferenceResponse.model_validate(preference)


@router.patch(
    "/preferences/{user_id}",
    response_model=NotificationPreferenceResponse,
    status_code=status.HTTP_200_OK,
)
async def update_notification_preferences(
    user_id: UUID,
    payload: NotificationPreferenceUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> NotificationPreferenceResponse:
    """Update notification preferences for the user."""

    preference = await _ensure_preference(session, user_id)

    updated = False
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field not in _NULLABLE_FIELDS:
            continue
        setattr(preference, field, value)
        updated = True

    if updated:
        await session.commit()
        await session.refresh(preference)

    return NotificationPreferenceResponse.model_validate(preference)


@router.post(
    "/device-tokens",
    response_model=DeviceTokenResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_device_token(
    payload: DeviceTokenRequest,
    session: AsyncSession = Depends(get_session),
) -> DeviceTokenResponse:
    """Register a push token, reactivating or reassigning it if already known."""

    await _ensure_user(session, payload.user_id)
    result = await session.execute(select(DeviceToken).where(DeviceToken.token == payload.token))
    device = result.scalar_one_or_none()
    now = datetime.now(timezone.utc)
    if device is None:
        device = DeviceToken(
            user_id=payload.user_id,
            token=payload.token,
            platform=payload.platform.value,
            is_active=True,
            last_used_at=now,
        )
        session.add(device)
    else:
        device.user_id = payload.user_id
        device.platform = payload.platform.value
        device.is_active = True
        device.last_used_at = now

    await session.commit()
    await session.refresh(device)
    return DeviceTokenResponse.model_validate(device)
