from __future__ import annotations

import asyncio
from uuid import uuid4

import httpx
import pytest

from otw_api.client import ClaimClient, ClaimState
from otw_api.services.flash_offers import ClaimErrorCode

OFFER_ID = uuid4()
USER_ID = uuid4()
CLAIMS_PATH = f"/api/v1/flash-offers/{OFFER_ID}/claims"
EXPIRES_AT = "2026-10-19T21:00:00+00:00"


class FakeClaimsApi:
    """Scripted claim endpoints; each queue entry is a response or an exception to raise."""

    def __init__(self, *, posts=(), statuses=()) -> None:
        self.posts = list(posts)
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == CLAIMS_PATH:
            queue = self.posts
        elif request.method == "GET" and request.url.path == f"{CLAIMS_PATH}/me":
            queue = self.statuses
        else:
            return httpx.Response(404, json={"detail": "Not Found"})
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def post_count(self) -> int:
        return sum(1 for request in self.requests if request.method == "POST")


def _client(api, remaining=5) -> ClaimClient:
    return ClaimClient(
        offer_id=OFFER_ID,
        user_id=USER_ID,
        base_url="http://test",
        remaining=remaining,
        transport=httpx.MockTransport(api),
    )


def _reserved(token="482913") -> httpx.Response:
    return httpx.Response(201, json={"status": "reserved", "token": token, "expiresAt": EXPIRES_AT})


@pytest.mark.asyncio
async def test_successful_claim():
    api = FakeClaimsApi(posts=[_reserved()])

    async with _client(api) as client:
        view = await client.submit()

    assert view.state is ClaimState.CLAIMED
    assert view.token == "482913"
    assert view.expires_at == EXPIRES_AT
    assert view.remaining == 4
    assert api.requests[0].headers["X-Session-User"] == str(USER_ID)


@pytest.mark.asyncio
async def test_rejection_maps_to_state():
    api = FakeClaimsApi(
        posts=[
            httpx.Response(
                409,
                json={"status": "error", "code": "OFFER_FULL", "message": "This offer has been fully claimed."},
            )
        ]
    )

    async with _client(api, remaining=1) as client:
        view = await client.submit()

    assert view.state is ClaimState.FULL
    assert view.error_code is ClaimErrorCode.OFFER_FULL
    assert view.message == "This offer has been fully claimed."
    assert view.remaining == 0


@pytest.mark.asyncio
async def test_timeout_is_resolved_by_status_check_before_resubmitting():
    api = FakeClaimsApi(
        posts=[httpx.ReadTimeout("timed out")],
        statuses=[
            httpx.Response(
                200,
                json={"status": "reserved", "token": "271828", "expiresAt": EXPIRES_AT, "remainingClaims": 3},
            )
        ],
    )

    async with _client(api) as client:
        after_timeout = await client.submit()
        assert after_timeout.state is ClaimState.ERROR
        assert after_timeout.needs_status_check
        assert after_timeout.remaining == 5

        view = await client.submit()

    assert view.state is ClaimState.CLAIMED
    assert view.token == "271828"
    assert view.remaining == 3
    assert api.post_count == 1


@pytest.mark.asyncio
async def test_failed_claim_is_retried_when_server_has_none():
    api = FakeClaimsApi(
        posts=[httpx.ConnectError("connection reset"), _reserved("161803")],
        statuses=[httpx.Response(200, json={"status": "none", "remainingClaims": 5})],
    )

    async with _client(api) as client:
        assert (await client.submit()).state is ClaimState.ERROR
        view = await client.submit()

    assert view.state is ClaimState.CLAIMED
    assert view.token == "161803"
    assert api.post_count == 2


@pytest.mark.asyncio
async def test_no_resubmit_while_claim_status_is_unknown():
    api = FakeClaimsApi(
        posts=[httpx.ReadTimeout("timed out")],
        statuses=[
            httpx.Response(503, json={"detail": "Service unavailable"}),
            httpx.Response(
                200,
                json={"status": "reserved", "token": "314159", "expiresAt": EXPIRES_AT, "remainingClaims": 2},
            ),
        ],
    )

    async with _client(api) as client:
        await client.submit()
        still_unknown = await client.submit()

        assert still_unknown.state is ClaimState.ERROR
        assert still_unknown.needs_status_check
        assert api.post_count == 1

        view = await client.submit()

    assert view.state is ClaimState.CLAIMED
    assert view.token == "314159"
    assert api.post_count == 1


@pytest.mark.asyncio
async def test_already_claimed_rejection_recovers_existing_token():
    api = FakeClaimsApi(
        posts=[
            httpx.Response(
                409,
                json={"status": "error", "code": "ALREADY_CLAIMED", "message": "You have already claimed this offer."},
            )
        ],
        statuses=[
            httpx.Response(
                200,
                json={"status": "reserved", "token": "577215", "expiresAt": EXPIRES_AT, "remainingClaims": 1},
            )
        ],
    )

    async with _client(api) as client:
        view = await client.submit()

    assert view.state is ClaimState.CLAIMED
    assert view.token == "577215"
    assert view.remaining == 1
    assert view.error_code is None


@pytest.mark.asyncio
async def test_already_claimed_stays_ineligible_when_status_is_unavailable():
    api = FakeClaimsApi(
        posts=[httpx.Response(409, json={"status": "error", "code": "ALREADY_CLAIMED", "message": "Claimed."})],
        statuses=[httpx.Response(500, json={"detail": "boom"})],
    )

    async with _client(api) as client:
        view = await client.submit()

    assert view.state is ClaimState.INELIGIBLE
    assert view.error_code is ClaimErrorCode.ALREADY_CLAIMED
    assert api.post_count == 1


@pytest.mark.asyncio
async def test_unparseable_response_is_a_failure():
    api = FakeClaimsApi(posts=[httpx.Response(502, text="Bad gateway")])

    async with _client(api) as client:
        view = await client.submit()

    assert view.state is ClaimState.ERROR
    assert view.needs_status_check


@pytest.mark.asyncio
async def test_concurrent_submit_is_ignored():
    release = asyncio.Event()
    posts = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal posts
        posts += 1
        await release.wait()
        return _reserved()

    client = ClaimClient(
        offer_id=OFFER_ID,
        user_id=USER_ID,
        base_url="http://test",
        remaining=2,
        transport=httpx.MockTransport(handler),
    )
    first = asyncio.create_task(client.submit())
    await asyncio.sleep(0.01)

    second = await client.submit()
    assert second.state is ClaimState.LOADING

    release.set()
    final = await first
    await client.aclose()

    assert final.state is ClaimState.CLAIMED
    assert posts == 1


@pytest.mark.asyncio
async def test_refresh_marks_expired_claim_ineligible():
    api = FakeClaimsApi(statuses=[httpx.Response(200, json={"status": "expired", "remainingClaims": 0})])

    async with _client(api) as client:
        view = await client.refresh()

    assert view.state is ClaimState.INELIGIBLE
    assert view.error_code is ClaimErrorCode.ALREADY_CLAIMED


@pytest.mark.asyncio
async def test_refresh_failure_keeps_current_view():
    api = FakeClaimsApi(statuses=[httpx.Response(500, json={"detail": "boom"})])

    async with _client(api, remaining=4) as client:
        before = client.view
        view = await client.refresh()

    assert view is before
