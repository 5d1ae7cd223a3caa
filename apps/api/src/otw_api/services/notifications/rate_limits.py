"""Daily send quotas for venues and receive caps for users.

Counters are keyed by calendar day, so a new day simply starts a new key.
Admission only reads; the matching ``record_*`` call increments once the
send has actually been handed to the delivery provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, Mapping, Protocol, Sequence
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from loguru import logger
from redis.asyncio import Redis
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import Settings, settings as default_settings
from otw_api.models.rate_limit import RateLimitCounter, RateLimitScopeEnum
from otw_api.observability.flash_offers import get_flash_offer_store


class RateLimitCounterStore(Protocol):
    async def get_counts(self, scope: str, subject_ids: Sequence[UUID], day_key: str) -> Dict[UUID, int]:
        ...

    async def increment(
        self,
        scope: str,
        subject_ids: Sequence[UUID],
        day_key: str,
        *,
        ceiling: int | None,
        expires_at: datetime,
    ) -> int:
        """Add one to each counter still below ``ceiling``; return how many moved."""
        ...

    async def decrement(self, scope: str, subject_id: UUID, day_key: str) -> None:
        ...


class SqlRateLimitCounterStore:
    """Counters in ``flash_offer_rate_limits``; each call commits its own unit of work."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session

    async def get_counts(self, scope: str, subject_ids: Sequence[UUID], day_key: str) -> Dict[UUID, int]:
        if not subject_ids:
            return {}
        result = await self._session.execute(
            select(RateLimitCounter.subject_id, RateLimitCounter.count).where(
                RateLimitCounter.scope == scope,
                RateLimitCounter.day_key == day_key,
                RateLimitCounter.subject_id.in_(subject_ids),
            )
        )
        return {subject_id: count for subject_id, count in result.all()}

    async def increment(
        self,
        scope: str,
        subject_ids: Sequence[UUID],
        day_key: str,
        *,
        ceiling: int | None,
        expires_at: datetime,
    ) -> int:
        if not subject_ids:
            return 0
        await self._ensure_rows(scope, subject_ids, day_key)
        stmt = (
            update(RateLimitCounter)
            .where(
                RateLimitCounter.scope == scope,
                RateLimitCounter.day_key == day_key,
                RateLimitCounter.subject_id.in_(subject_ids),
            )
            .values(count=RateLimitCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        if ceiling is not None:
            stmt = stmt.where(RateLimitCounter.count < ceiling)
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount or 0

    async def decrement(self, scope: str, subject_id: UUID, day_key: str) -> None:
        await self._session.execute(
            update(RateLimitCounter)
            .where(
                RateLimitCounter.scope == scope,
                RateLimitCounter.day_key == day_key,
                RateLimitCounter.subject_id == subject_id,
                RateLimitCounter.count > 0,
            )
            .values(count=RateLimitCounter.count - 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

    async def _ensure_rows(self, scope: str, subject_ids: Sequence[UUID], day_key: str) -> None:
        dialect = self._session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(RateLimitCounter)
            .values(
                [
                    {"id": uuid4(), "scope": scope, "subject_id": subject_id, "day_key": day_key, "count": 0}
                    for subject_id in subject_ids
                ]
            )
            .on_conflict_do_nothing(
                index_elements=[RateLimitCounter.scope, RateLimitCounter.subject_id, RateLimitCounter.day_key]
            )
        )
        await self._session.execute(stmt)


class RedisRateLimitCounterStore:
    """INCR-based counters that expire the day after their key."""

    def __init__(self, redis_client: Redis | None = None, *, prefix: str = "otw:flash_offer:rate") -> None:
        self._redis = redis_client or Redis.from_url(
            default_settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._prefix = prefix

    def _key(self, scope: str, subject_id: UUID, day_key: str) -> str:
        return f"{self._prefix}:{scope}:{subject_id}:{day_key}"

    async def get_counts(self, scope: str, subject_ids: Sequence[UUID], day_key: str) -> Dict[UUID, int]:
        if not subject_ids:
            return {}
        values = await self._redis.mget([self._key(scope, subject_id, day_key) for subject_id in subject_ids])
        return {
            subject_id: int(value)
            for subject_id, value in zip(subject_ids, values)
            if value is not None
        }

    async def increment(
        self,
        scope: str,
        subject_ids: Sequence[UUID],
        day_key: str,
        *,
        ceiling: int | None,
        expires_at: datetime,
    ) -> int:
        moved = 0
        for subject_id in subject_ids:
            key = self._key(scope, subject_id, day_key)
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expireat(key, int(expires_at.timestamp()))
            if ceiling is not None and count > ceiling:
                await self._redis.decr(key)
                continue
            moved += 1
        return moved

    async def decrement(self, scope: str, subject_id: UUID, day_key: str) -> None:
        key = self._key(scope, subject_id, day_key)
        count = await self._redis.decr(key)
        if count < 0:
            await self._redis.set(key, 0)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    admitted: bool
    count: int
    limit: int | None
    resets_at: datetime


class RateLimiter:
    def __init__(
        self,
        store: RateLimitCounterStore,
        *,
        venue_limits: Mapping[str, int | None] | None = None,
        user_limit: int | None = None,
        timezone_name: str | None = None,
    ) -> None:
        self._store = store
        self._venue_limits = dict(venue_limits if venue_limits is not None else default_settings.flash_offer_venue_daily_limits)
        self._user_limit = user_limit if user_limit is not None else default_settings.flash_offer_user_daily_limit
        self._zone = ZoneInfo(timezone_name or default_settings.flash_offer_rate_limit_timezone)
        self._telemetry = get_flash_offer_store()

    def day_key(self, now: datetime) -> str:
        return now.astimezone(self._zone).date().isoformat()

    def resets_at(self, now: datetime) -> datetime:
        local_day = now.astimezone(self._zone).date()
        return datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=self._zone).astimezone(timezone.utc)

    def venue_limit(self, tier: str | None) -> int | None:
        tier_key = (tier or "free").lower()
        if tier_key in self._venue_limits:
            return self._venue_limits[tier_key]
        return self._venue_limits.get("free", 1)

    async def admit_venue(self, venue_id: UUID, tier: str | None, *, now: datetime | None = None) -> RateLimitDecision:
        now = now or datetime.now(timezone.utc)
        limit = self.venue_limit(tier)
        counts = await self._store.get_counts(RateLimitScopeEnum.VENUE_SEND.value, [venue_id], self.day_key(now))
        count = counts.get(venue_id, 0)
        admitted = limit is None or count < limit
        if not admitted:
            self._telemetry.record_rate_limit_rejection(RateLimitScopeEnum.VENUE_SEND.value)
            logger.info("Venue flash offer quota reached", venue_id=str(venue_id), tier=tier, count=count, limit=limit)
        return RateLimitDecision(admitted=admitted, count=count, limit=limit, resets_at=self.resets_at(now))

    async def admit_user(self, user_id: UUID, *, now: datetime | None = None) -> bool:
        return user_id in await self.admit_users([user_id], now=now)

    async def admit_users(self, user_ids: Iterable[UUID], *, now: datetime | None = None) -> set[UUID]:
        now = now or datetime.now(timezone.utc)
        ids = list(user_ids)
        counts = await self._store.get_counts(RateLimitScopeEnum.USER_RECEIVE.value, ids, self.day_key(now))
        admitted = {user_id for user_id in ids if counts.get(user_id, 0) < self._user_limit}
        rejected = len(ids) - len(admitted)
        if rejected:
            self._telemetry.record_rate_limit_rejection(RateLimitScopeEnum.USER_RECEIVE.value, rejected)
        return admitted

    async def record_venue_send(self, venue_id: UUID, tier: str | None, *, now: datetime | None = None) -> bool:
        """Take one unit of the venue's daily quota; False when another send got there first."""

        now = now or datetime.now(timezone.utc)
        moved = await self._store.increment(
            RateLimitScopeEnum.VENUE_SEND.value,
            [venue_id],
            self.day_key(now),
            ceiling=self.venue_limit(tier),
            expires_at=self.resets_at(now) + timedelta(days=1),
        )
        return moved == 1

    async def release_venue_send(self, venue_id: UUID, *, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        await self._store.decrement(RateLimitScopeEnum.VENUE_SEND.value, venue_id, self.day_key(now))

    async def record_user_sends(self, user_ids: Iterable[UUID], *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        ids = list(dict.fromkeys(user_ids))
        return await self._store.increment(
            RateLimitScopeEnum.USER_RECEIVE.value,
            ids,
            self.day_key(now),
            ceiling=self._user_limit,
            expires_at=self.resets_at(now) + timedelta(days=1),
        )


def build_counter_store(db_session: AsyncSession, config: Settings | None = None) -> RateLimitCounterStore:
    config = config or default_settings
    if config.flash_offer_rate_limit_backend == "redis":
        return RedisRateLimitCounterStore()
    return SqlRateLimitCounterStore(db_session)


__all__ = [
    "RateLimitCounterStore",
    "RateLimitDecision",
    "RateLimiter",
    "RedisRateLimitCounterStore",
    "SqlRateLimitCounterStore",
    "build_counter_store",
]
