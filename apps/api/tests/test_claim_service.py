from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from otw_api.models.flash_offer import (
    FlashOffer,
    FlashOfferClaim,
    FlashOfferClaimStatusEnum,
    FlashOfferEvent,
    FlashOfferEventTypeEnum,
    FlashOfferReservation,
    FlashOfferStatusEnum,
)
from otw_api.models.user import UserRoleEnum
from otw_api.services.flash_offers import (
    ClaimErrorCode,
    ClaimLedger,
    ClaimService,
    RedemptionError,
    TokenIssuanceExhaustedError,
    TokenIssuer,
)


async def _claim(factory, user_id, offer_id, **kwargs):
    async with factory() as session:
        return await ClaimService(session, **kwargs).claim(user_id, offer_id)


async def _count(factory, model, *criteria) -> int:
    async with factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*criteria))


@pytest.mark.asyncio
async def test_checked_in_user_receives_token(session_factory, seed, reset_flash_offer_store):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=3)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    result = await _claim(session_factory, user_id, offer_id)

    assert result.status == "reserved"
    assert result.token is not None and len(result.token) == 6 and result.token.isdigit()
    assert result.expires_at > datetime.now(timezone.utc) + timedelta(hours=23)
    assert result.as_payload()["status"] == "reserved"

    offer = await seed.get_offer(offer_id)
    assert offer.claimed_count == 1
    assert await _count(session_factory, FlashOfferClaim, FlashOfferClaim.offer_id == offer_id) == 1
    assert (
        await _count(
            session_factory,
            FlashOfferEvent,
            FlashOfferEvent.offer_id == offer_id,
            FlashOfferEvent.event_type == FlashOfferEventTypeEnum.CLAIM.value,
        )
        == 1
    )
    assert reset_flash_offer_store.snapshot().claims == {"reserved": 1}


@pytest.mark.asyncio
async def test_second_claim_by_same_user_is_rejected(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=3)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    first = await _claim(session_factory, user_id, offer_id)
    second = await _claim(session_factory, user_id, offer_id)

    assert first.status == "reserved"
    assert second.status == "error"
    assert second.code is ClaimErrorCode.ALREADY_CLAIMED
    assert second.as_payload() == {
        "status": "error",
        "code": "ALREADY_CLAIMED",
        "message": "You've already claimed this offer. View your claim in My Claims.",
    }
    assert (await seed.get_offer(offer_id)).claimed_count == 1


@pytest.mark.asyncio
async def test_user_must_be_checked_in(session_factory, seed):
    venue_id = await seed.venue()
    other_venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    user_id = await seed.user()
    await seed.check_in(user_id, other_venue_id)

    result = await _claim(session_factory, user_id, offer_id)

    assert result.code is ClaimErrorCode.NOT_CHECKED_IN
    assert not result.retryable
    assert (await seed.get_offer(offer_id)).claimed_count == 0


@pytest.mark.asyncio
async def test_check_in_outside_window_does_not_count(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id, ago=timedelta(hours=13))

    result = await _claim(session_factory, user_id, offer_id)

    assert result.code is ClaimErrorCode.NOT_CHECKED_IN


@pytest.mark.asyncio
async def test_expired_and_future_offers_report_expired(session_factory, seed):
    venue_id = await seed.venue()
    ended = await seed.offer(venue_id, starts_in=timedelta(hours=-3), lasts=timedelta(hours=1))
    upcoming = await seed.offer(venue_id, starts_in=timedelta(hours=2), status=FlashOfferStatusEnum.SCHEDULED)
    cancelled = await seed.offer(venue_id, status=FlashOfferStatusEnum.CANCELLED)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    for offer_id in (ended, upcoming, cancelled):
        result = await _claim(session_factory, user_id, offer_id)
        assert result.code is ClaimErrorCode.OFFER_EXPIRED


@pytest.mark.asyncio
async def test_full_offer_is_rejected_before_ledger(session_factory, seed, reset_flash_offer_store):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=2, claimed_count=2, status=FlashOfferStatusEnum.FULL)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    result = await _claim(session_factory, user_id, offer_id)

    assert result.code is ClaimErrorCode.OFFER_FULL
    assert result.reason == "offer_full"
    assert reset_flash_offer_store.snapshot().ledger == {}


@pytest.mark.asyncio
async def test_unknown_offer(session_factory, seed):
    user_id = await seed.user()

    result = await _claim(session_factory, user_id, uuid4())

    assert result.code is ClaimErrorCode.OFFER_NOT_FOUND


class RacingLedger(ClaimLedger):
    """Fills the offer between the eligibility read and the reservation."""

    async def reserve(self, offer_id, user_id):
        await self._session.execute(
            update(FlashOffer)
            .where(FlashOffer.id == offer_id)
            .values(claimed_count=FlashOffer.max_claims, status=FlashOfferStatusEnum.FULL.value)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return await super().reserve(offer_id, user_id)


@pytest.mark.asyncio
async def test_capacity_race_surfaces_as_offer_full(session_factory, seed, reset_flash_offer_store):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=2)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    async with session_factory() as session:
        result = await ClaimService(session, ledger=RacingLedger(session)).claim(user_id, offer_id)

    assert result.code is ClaimErrorCode.OFFER_FULL
    assert result.reason == "capacity_exceeded"
    assert (await seed.get_offer(offer_id)).claimed_count == 2
    assert reset_flash_offer_store.snapshot().ledger["capacity_races"] == 1
    assert (
        await _count(
            session_factory,
            FlashOfferEvent,
            FlashOfferEvent.event_type == FlashOfferEventTypeEnum.CAPACITY_RACE.value,
        )
        == 1
    )


@pytest.mark.asyncio
async def test_token_exhaustion_releases_reservation(session_factory, seed, reset_flash_offer_store):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=3)
    holder_id = await seed.user()
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)
    async with session_factory() as session:
        session.add(
            FlashOfferClaim(
                offer_id=offer_id,
                user_id=holder_id,
                token="000042",
                status=FlashOfferClaimStatusEnum.REDEEMED.value,
                expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        )
        await session.commit()

    async with session_factory() as session:
        issuer = TokenIssuer(session, randbelow=lambda bound: 42)
        result = await ClaimService(session, token_issuer=issuer).claim(user_id, offer_id)

    assert result.code is ClaimErrorCode.TEMPORARILY_UNAVAILABLE
    assert result.reason == "token_exhausted"
    assert result.retryable
    assert (await seed.get_offer(offer_id)).claimed_count == 0
    assert await _count(session_factory, FlashOfferReservation, FlashOfferReservation.offer_id == offer_id) == 0
    assert reset_flash_offer_store.snapshot().ledger == {"compensations": 1}


@pytest.mark.asyncio
async def test_token_issuer_retries_collisions(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    holder_id = await seed.user()
    async with session_factory() as session:
        session.add(
            FlashOfferClaim(
                offer_id=offer_id,
                user_id=holder_id,
                token="000007",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        )
        await session.commit()

    draws = iter([7, 7, 123456])
    async with session_factory() as session:
        token = await TokenIssuer(session, randbelow=lambda bound: next(draws)).issue(offer_id)

    assert token == "123456"


@pytest.mark.asyncio
async def test_token_issuer_gives_up_after_max_attempts(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    holder_id = await seed.user()
    async with session_factory() as session:
        session.add(
            FlashOfferClaim(
                offer_id=offer_id,
                user_id=holder_id,
                token="000001",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        )
        await session.commit()

    async with session_factory() as session:
        issuer = TokenIssuer(session, max_attempts=3, randbelow=lambda bound: 1)
        with pytest.raises(TokenIssuanceExhaustedError) as excinfo:
            await issuer.issue(offer_id)

    assert excinfo.value.attempts == 3


def test_token_draw_is_zero_padded():
    issuer = TokenIssuer(None, length=6, randbelow=lambda bound: 5)  # type: ignore[arg-type]

    assert issuer.draw() == "000005"


@pytest.mark.asyncio
async def test_redeem_marks_claim_once(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    user_id = await seed.user()
    staff_id = await seed.user(role=UserRoleEnum.VENUE_STAFF)
    await seed.check_in(user_id, venue_id)
    claimed = await _claim(session_factory, user_id, offer_id)

    async with session_factory() as session:
        claim = await ClaimService(session).redeem(offer_id, claimed.token, staff_user_id=staff_id)
        assert claim.status == FlashOfferClaimStatusEnum.REDEEMED.value
        assert claim.redeemed_at is not None
        assert claim.redeemed_by_user_id == staff_id

    async with session_factory() as session:
        with pytest.raises(RedemptionError) as excinfo:
            await ClaimService(session).redeem(offer_id, claimed.token, staff_user_id=staff_id)
    assert excinfo.value.reason == "already_redeemed"


@pytest.mark.asyncio
async def test_redeem_rejects_unknown_and_expired_tokens(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    user_id = await seed.user()
    staff_id = await seed.user(role=UserRoleEnum.VENUE_OWNER)
    await seed.check_in(user_id, venue_id)
    claimed = await _claim(session_factory, user_id, offer_id)

    async with session_factory() as session:
        service = ClaimService(session)
        with pytest.raises(RedemptionError) as unknown:
            await service.redeem(offer_id, "999999" if claimed.token != "999999" else "999998", staff_user_id=staff_id)
        assert unknown.value.reason == "invalid_token"

        later = datetime.now(timezone.utc) + timedelta(days=2)
        with pytest.raises(RedemptionError) as expired:
            await service.redeem(offer_id, claimed.token, staff_user_id=staff_id, now=later)
        assert expired.value.reason == "expired"


@pytest.mark.asyncio
async def test_get_claim_status(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id)
    user_id = await seed.user()
    await seed.check_in(user_id, venue_id)

    async with session_factory() as session:
        assert await ClaimService(session).get_claim_status(user_id, offer_id) is None

    claimed = await _claim(session_factory, user_id, offer_id)

    async with session_factory() as session:
        claim = await ClaimService(session).get_claim_status(user_id, offer_id)
    assert claim.token == claimed.token
    assert claim.status == FlashOfferClaimStatusEnum.RESERVED.value


@pytest.mark.asyncio
async def test_last_slot_goes_to_exactly_one_user(concurrent_session_factory, concurrent_seed):
    venue_id = await concurrent_seed.venue()
    offer_id = await concurrent_seed.offer(venue_id, max_claims=1)
    first, second = await concurrent_seed.user(), await concurrent_seed.user()
    await concurrent_seed.check_in(first, venue_id)
    await concurrent_seed.check_in(second, venue_id)

    results = await asyncio.gather(
        _claim(concurrent_session_factory, first, offer_id),
        _claim(concurrent_session_factory, second, offer_id),
    )

    statuses = sorted(result.status for result in results)
    assert statuses == ["error", "reserved"]
    rejected = next(result for result in results if result.status == "error")
    assert rejected.code is ClaimErrorCode.OFFER_FULL
    offer = await concurrent_seed.get_offer(offer_id)
    assert offer.claimed_count == 1
    assert offer.status == FlashOfferStatusEnum.FULL.value
