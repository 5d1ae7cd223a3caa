"""Per-user opt-out, quiet hours and distance preferences."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Dict, List, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.models.notification import NotificationPreference

from .targeting import Candidate


def is_within_quiet_hours(local_time: time, start: time | None, end: time | None) -> bool:
    """Start is inclusive, end exclusive; a window with start > end wraps midnight."""

    if start is None or end is None or start == end:
        return False
    local_time = local_time.replace(tzinfo=None)
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown preference timezone, using UTC", timezone=name)
        return ZoneInfo("UTC")


@dataclass(frozen=True, slots=True)
class PreferenceSnapshot:
    flash_offers_enabled: bool = True
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    timezone: str = "UTC"
    max_distance_miles: float | None = None

    @classmethod
    def from_model(cls, preference: NotificationPreference) -> "PreferenceSnapshot":
        return cls(
            flash_offers_enabled=bool(preference.flash_offers_enabled),
            quiet_hours_start=preference.quiet_hours_start,
            quiet_hours_end=preference.quiet_hours_end,
            timezone=preference.timezone or "UTC",
            max_distance_miles=preference.max_distance_miles,
        )


@dataclass
class FilterOutcome:
    eligible: List[Candidate] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=lambda: {"disabled": 0, "quiet_hours": 0, "distance": 0})


def check_preference(preference: PreferenceSnapshot, candidate: Candidate, now: datetime) -> str | None:
    """Return the skip reason for the candidate, or None when they may be notified."""

    if not preference.flash_offers_enabled:
        return "disabled"
    local_now = now.astimezone(resolve_timezone(preference.timezone))
    if is_within_quiet_hours(local_now.time(), preference.quiet_hours_start, preference.quiet_hours_end):
        return "quiet_hours"
    if (
        preference.max_distance_miles is not None
        and candidate.distance_miles is not None
        and candidate.distance_miles > preference.max_distance_miles
    ):
        return "distance"
    return None


class PreferenceFilter:
    """Reads the preference store; users without a row get the defaults."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session

    async def filter(self, candidates: Sequence[Candidate], *, now: datetime | None = None) -> FilterOutcome:
        now = now or datetime.now(timezone.utc)
        outcome = FilterOutcome()
        if not candidates:
            return outcome

        preferences = await self._load([candidate.user_id for candidate in candidates])
        default = PreferenceSnapshot()
        for candidate in candidates:
            reason = check_preference(preferences.get(candidate.user_id, default), candidate, now)
            if reason is None:
                outcome.eligible.append(candidate)
            else:
                outcome.skipped[reason] += 1
        return outcome

    async def _load(self, user_ids: Sequence[UUID]) -> Dict[UUID, PreferenceSnapshot]:
        result = await self._session.execute(
            select(NotificationPreference).where(NotificationPreference.user_id.in_(user_ids))
        )
        return {row.user_id: PreferenceSnapshot.from_model(row) for row in result.scalars()}


__all__ = [
    "FilterOutcome",
    "PreferenceFilter",
    "PreferenceSnapshot",
    "check_preference",
    "is_within_quiet_hours",
    "resolve_timezone",
]
