from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from otw_api.app import create_app
from otw_api.db.base import Base
from otw_api.db.session import enable_sqlite_write_locking, get_session
from otw_api.models.flash_offer import FlashOffer, FlashOfferStatusEnum
from otw_api.models.notification import DeviceToken, NotificationPreference
from otw_api.models.user import User, UserRoleEnum
from otw_api.models.venue import CheckIn, Venue, VenueFavorite, VenueTierEnum
from otw_api.observability.flash_offers import get_flash_offer_store

# Lower Manhattan; "nearby" users sit a few hundred feet away.
VENUE_LAT = 40.7128
VENUE_LON = -74.0060


class Seeder:
    """Writes fixture rows and hands back primary keys only."""

    def __init__(self, factory: async_sessionmaker) -> None:
        self._factory = factory

    async def _add(self, *rows) -> None:
        async with self._factory() as session:
            session.add_all(rows)
            await session.commit()

    async def user(
        self,
        *,
        role: UserRoleEnum = UserRoleEnum.CUSTOMER,
        latitude: float | None = None,
        longitude: float | None = None,
        tokens: Iterable[str] = (),
        inactive_tokens: Iterable[str] = (),
    ) -> UUID:
        user_id = uuid4()
        rows = [
            User(
                id=user_id,
                email=f"{user_id.hex[:12]}@example.com",
                role=role.value,
                last_latitude=latitude,
                last_longitude=longitude,
            )
        ]
        rows.extend(DeviceToken(user_id=user_id, token=token, is_active=True) for token in tokens)
        rows.extend(DeviceToken(user_id=user_id, token=token, is_active=False) for token in inactive_tokens)
        await self._add(*rows)
        return user_id

    async def nearby_user(self, *tokens: str, offset: float = 0.001) -> UUID:
        return await self.user(latitude=VENUE_LAT + offset, longitude=VENUE_LON, tokens=tokens)

    async def venue(self, *, tier: VenueTierEnum = VenueTierEnum.BASIC, owner_id: UUID | None = None) -> UUID:
        venue_id = uuid4()
        await self._add(
            Venue(
                id=venue_id,
                name="Blue Door Tavern",
                owner_id=owner_id,
                latitude=VENUE_LAT,
                longitude=VENUE_LON,
                subscription_tier=tier.value,
            )
        )
        return venue_id

    async def offer(
        self,
        venue_id: UUID,
        *,
        max_claims: int = 5,
        claimed_count: int = 0,
        status: FlashOfferStatusEnum = FlashOfferStatusEnum.ACTIVE,
        starts_in: timedelta = timedelta(hours=-1),
        lasts: timedelta = timedelta(hours=3),
        radius_miles: float = 1.0,
        favorites_only: bool = False,
    ) -> UUID:
        offer_id = uuid4()
        start = datetime.now(timezone.utc) + starts_in
        await self._add(
            FlashOffer(
                id=offer_id,
                venue_id=venue_id,
                title="Half-price nachos",
                description="Show this screen at the bar for half-price nachos.",
                value_cap="50% off",
                claim_value=Decimal("8.50"),
                max_claims=max_claims,
                claimed_count=claimed_count,
                start_time=start,
                end_time=start + lasts,
                radius_miles=radius_miles,
                target_favorites_only=favorites_only,
                status=status.value,
            )
        )
        return offer_id

    async def check_in(self, user_id: UUID, venue_id: UUID, *, ago: timedelta = timedelta(minutes=20)) -> None:
        await self._add(
            CheckIn(user_id=user_id, venue_id=venue_id, checked_in_at=datetime.now(timezone.utc) - ago)
        )

    async def favorite(self, user_id: UUID, venue_id: UUID) -> None:
        await self._add(VenueFavorite(user_id=user_id, venue_id=venue_id))

    async def preference(self, user_id: UUID, **fields) -> None:
        await self._add(NotificationPreference(user_id=user_id, **fields))

    async def get_offer(self, offer_id: UUID) -> FlashOffer:
        async with self._factory() as session:
            return await session.get(FlashOffer, offer_id)


@pytest.fixture(autouse=True)
def reset_flash_offer_store():
    store = get_flash_offer_store()
    store.reset()
    yield store
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def concurrent_session_factory(tmp_path):
    """File-backed SQLite where every transaction takes the write lock, for race trials."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'claims.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    enable_sqlite_write_locking(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def concurrent_seed(concurrent_session_factory) -> Seeder:
    return Seeder(concurrent_session_factory)


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
