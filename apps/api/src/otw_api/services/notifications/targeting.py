"""Audience selection for new flash offers."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Sequence
from uuid import UUID

from sqlalchemy import Select, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.models.flash_offer import FlashOffer
from otw_api.models.notification import DeviceToken
from otw_api.models.user import User
from otw_api.models.venue import Venue, VenueFavorite

EARTH_RADIUS_MILES = 3958.8
_MILES_PER_DEGREE_LAT = 69.0


@dataclass(frozen=True, slots=True)
class Candidate:
    user_id: UUID
    tokens: tuple[str, ...]
    distance_miles: float | None = None


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(lat: float, lon: float, radius_miles: float) -> tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lon, max_lon) enclosing the radius.

    Latitudes are clamped to the poles. Longitudes are not wrapped, so near the
    antimeridian ``min_lon`` may fall below -180 or ``max_lon`` above 180; see
    ``longitude_ranges``.
    """

    d_lat = radius_miles / _MILES_PER_DEGREE_LAT
    min_lat, max_lat = max(lat - d_lat, -90.0), min(lat + d_lat, 90.0)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return min_lat, max_lat, -180.0, 180.0
    d_lon = radius_miles / (_MILES_PER_DEGREE_LAT * cos_lat)
    if d_lon >= 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, lon - d_lon, lon + d_lon


def longitude_ranges(min_lon: float, max_lon: float) -> list[tuple[float, float]]:
    """Split a longitude span that crosses +/-180 into ranges inside [-180, 180]."""

    if min_lon < -180.0:
        return [(min_lon + 360.0, 180.0), (-180.0, max_lon)]
    if max_lon > 180.0:
        return [(min_lon, 180.0), (-180.0, max_lon - 360.0)]
    return [(min_lon, max_lon)]


class RecipientSelector:
    """Yields candidate pages, one keyset-paginated query (ordered by user id) per page.

    Only users holding at least one active device token are returned.
    """

    def __init__(self, db_session: AsyncSession, *, page_size: int | None = None) -> None:
        self._session = db_session
        self._page_size = max(page_size or settings.flash_offer_selection_page_size, 1)

    async def select(self, offer: FlashOffer, venue: Venue) -> AsyncIterator[List[Candidate]]:
        radius = float(offer.radius_miles)
        base = self._favorites_query(venue) if offer.target_favorites_only else self._radius_query(venue, radius)

        last_user_id: UUID | None = None
        while True:
            stmt = base.order_by(User.id).limit(self._page_size)
            if last_user_id is not None:
                stmt = stmt.where(User.id > last_user_id)
            rows = (await self._session.execute(stmt)).all()
            if not rows:
                break
            last_user_id = rows[-1].id

            located: Dict[UUID, float | None] = {}
            for row in rows:
                distance = None
                if row.last_latitude is not None and row.last_longitude is not None:
                    distance = haversine_miles(venue.latitude, venue.longitude, row.last_latitude, row.last_longitude)
                if not offer.target_favorites_only and (distance is None or distance > radius):
                    continue
                located[row.id] = distance

            tokens = await self._active_tokens(list(located))
            page = [
                Candidate(user_id=user_id, tokens=tuple(tokens[user_id]), distance_miles=distance)
                for user_id, distance in located.items()
                if tokens.get(user_id)
            ]
            if page:
                yield page
            if len(rows) < self._page_size:
                break

    @staticmethod
    def _favorites_query(venue: Venue) -> Select:
        return (
            select(User.id, User.last_latitude, User.last_longitude)
            .join(VenueFavorite, VenueFavorite.user_id == User.id)
            .where(VenueFavorite.venue_id == venue.id)
        )

    @staticmethod
    def _radius_query(venue: Venue, radius_miles: float) -> Select:
        min_lat, max_lat, min_lon, max_lon = bounding_box(venue.latitude, venue.longitude, radius_miles)
        return select(User.id, User.last_latitude, User.last_longitude).where(
            User.last_latitude.is_not(None),
            User.last_longitude.is_not(None),
            User.last_latitude.between(min_lat, max_lat),
            or_(*(User.last_longitude.between(low, high) for low, high in longitude_ranges(min_lon, max_lon))),
        )

    async def _active_tokens(self, user_ids: Sequence[UUID]) -> Dict[UUID, List[str]]:
        if not user_ids:
            return {}
        result = await self._session.execute(
            select(DeviceToken.user_id, DeviceToken.token)
            .where(DeviceToken.user_id.in_(user_ids), DeviceToken.is_active.is_(True))
            .order_by(DeviceToken.created_at)
        )
        tokens: Dict[UUID, List[str]] = defaultdict(list)
        for user_id, token in result.all():
            tokens[user_id].append(token)
        return tokens


__all__ = ["Candidate", "EARTH_RADIUS_MILES", "RecipientSelector", "bounding_box", "haversine_miles", "longitude_ranges"]
