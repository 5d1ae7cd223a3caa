"""SQLAlchemy models package."""

from .user import User, UserRoleEnum  # noqa: F401
from .venue import CheckIn, Venue, VenueFavorite, VenueTierEnum  # noqa: F401
from .flash_offer import (  # noqa: F401
    FlashOffer,
    FlashOfferClaim,
    FlashOfferClaimStatusEnum,
    FlashOfferEvent,
    FlashOfferEventTypeEnum,
    FlashOfferPushStatusEnum,
    FlashOfferReservation,
    FlashOfferStatusEnum,
)
from .notification import DevicePlatformEnum, DeviceToken, NotificationPreference  # noqa: F401
from .rate_limit import RateLimitCounter, RateLimitScopeEnum  # noqa: F401
