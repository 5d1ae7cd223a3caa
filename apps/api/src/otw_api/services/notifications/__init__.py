"""Flash offer push notification pipeline."""

from .backend import (
    DeliveryOutcome,
    DeliveryStatus,
    FCMPushProvider,
    InMemoryPushProvider,
    PushDeliveryProvider,
    PushMessage,
    build_push_provider,
)
from .batcher import DeliveryAttempt, DeliveryReport, DispatchBatcher
from .dispatch import DispatchSummary, NotificationDispatchEngine
from .payload import PushPayload, build_flash_offer_payload
from .preferences import PreferenceFilter, is_within_quiet_hours
from .rate_limits import (
    RateLimitDecision,
    RateLimiter,
    RedisRateLimitCounterStore,
    SqlRateLimitCounterStore,
    build_counter_store,
)
from .targeting import Candidate, RecipientSelector, haversine_miles

__all__ = [
    "Candidate",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DeliveryReport",
    "DeliveryStatus",
    "DispatchBatcher",
    "DispatchSummary",
    "FCMPushProvider",
    "InMemoryPushProvider",
    "NotificationDispatchEngine",
    "PreferenceFilter",
    "PushDeliveryProvider",
    "PushMessage",
    "PushPayload",
    "RateLimitDecision",
    "RateLimiter",
    "RecipientSelector",
    "RedisRateLimitCounterStore",
    "SqlRateLimitCounterStore",
    "build_counter_store",
    "build_flash_offer_payload",
    "build_push_provider",
    "haversine_miles",
    "is_within_quiet_hours",
]
