from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from otw_api.models.notification import DeviceToken


@pytest.mark.asyncio
async def test_get_preferences_creates_defaults(app_with_db, seed):
    app, _session_factory = app_with_db
    user_id = await seed.user()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/api/v1/notifications/preferences/{user_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["flash_offers_enabled"] is True
    assert body["quiet_hours_start"] is None
    assert body["quiet_hours_end"] is None
    assert body["timezone"] == "UTC"
    assert body["max_distance_miles"] is None


@pytest.mark.asyncio
async def test_update_preferences(app_with_db, seed):
    app, _session_factory = app_with_db
    user_id = await seed.user()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get(f"/api/v1/notifications/preferences/{user_id}")
        response = await client.patch(
            f"/api/v1/notifications/preferences/{user_id}",
            json={
                "quiet_hours_start": "22:00:00",
                "quiet_hours_end": "07:00:00",
                "timezone": "America/Chicago",
                "max_distance_miles": 2.5,
            },
        )
        cleared = await client.patch(
            f"/api/v1/notifications/preferences/{user_id}",
            json={"flash_offers_enabled": False, "max_distance_miles": None},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["quiet_hours_start"] == "22:00:00"
    assert body["quiet_hours_end"] == "07:00:00"
    assert body["timezone"] == "America/Chicago"
    assert body["max_distance_miles"] == 2.5

    assert cleared.status_code == 200
    cleared_body = cleared.json()
    assert cleared_body["flash_offers_enabled"] is False
    assert cleared_body["max_distance_miles"] is None
    assert cleared_body["timezone"] == "America/Chicago"


@pytest.mark.asyncio
async def test_update_rejects_unknown_timezone(app_with_db, seed):
    app, _session_factory = app_with_db
    user_id = await seed.user()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.patch(
            f"/api/v1/notifications/preferences/{user_id}",
            json={"timezone": "Atlantis/Lost_City"},
        )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_preferences_for_unknown_user(app_with_db):
    app, _session_factory = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/api/v1/notifications/preferences/{uuid4()}")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_device_token_registration_reassigns_and_reactivates(app_with_db, seed):
    app, session_factory = app_with_db
    first_owner = await seed.user(inactive_tokens=["shared-device"])
    second_owner = await seed.user()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        reactivated = await client.post(
            "/api/v1/notifications/device-tokens",
            json={"user_id": str(first_owner), "token": "shared-device", "platform": "android"},
        )
        reassigned = await client.post(
            "/api/v1/notifications/device-tokens",
            json={"user_id": str(second_owner), "token": "shared-device"},
        )
        unknown = await client.post(
            "/api/v1/notifications/device-tokens",
            json={"user_id": str(uuid4()), "token": "orphan-device"},
        )

    assert reactivated.status_code == 201
    assert reactivated.json()["is_active"] is True
    assert reactivated.json()["platform"] == "android"
    assert reassigned.status_code == 201
    assert reassigned.json()["user_id"] == str(second_owner)
    assert unknown.status_code == 404

    async with session_factory() as session:
        devices = (await session.execute(select(DeviceToken))).scalars().all()
    assert len(devices) == 1
    assert devices[0].user_id == second_owner
    assert devices[0].last_used_at is not None
