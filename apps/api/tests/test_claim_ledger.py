from __future__ import annotations

import asyncio
import random
from collections import Counter
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from otw_api.models.flash_offer import FlashOffer, FlashOfferReservation, FlashOfferStatusEnum
from otw_api.services.flash_offers import ClaimLedger, LedgerOutcome


async def _reserve(factory, offer_id, user_id):
    async with factory() as session:
        return await ClaimLedger(session).reserve(offer_id, user_id)


async def _reservation_count(factory, offer_id) -> int:
    async with factory() as session:
        return await session.scalar(
            select(func.count()).select_from(FlashOfferReservation).where(FlashOfferReservation.offer_id == offer_id)
        )


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_capacity(concurrent_session_factory, concurrent_seed):
    rng = random.Random(20261018)
    venue_id = await concurrent_seed.venue()

    for _trial in range(5):
        max_claims = rng.randint(1, 5)
        attempts = max_claims + rng.randint(2, 6)
        offer_id = await concurrent_seed.offer(venue_id, max_claims=max_claims)
        user_ids = [await concurrent_seed.user() for _ in range(attempts)]
        rng.shuffle(user_ids)

        results = await asyncio.gather(
            *(_reserve(concurrent_session_factory, offer_id, user_id) for user_id in user_ids)
        )

        outcomes = Counter(result.outcome for result in results)
        assert outcomes[LedgerOutcome.RESERVED] == max_claims
        assert outcomes[LedgerOutcome.CAPACITY_EXCEEDED] == attempts - max_claims
        reserved_users = [result.user_id for result in results if result.reserved]
        assert len(set(reserved_users)) == len(reserved_users)

        offer = await concurrent_seed.get_offer(offer_id)
        assert offer.claimed_count == max_claims
        assert offer.status == FlashOfferStatusEnum.FULL.value
        assert await _reservation_count(concurrent_session_factory, offer_id) == max_claims


@pytest.mark.asyncio
async def test_concurrent_duplicate_reservations_grant_one(concurrent_session_factory, concurrent_seed):
    venue_id = await concurrent_seed.venue()
    offer_id = await concurrent_seed.offer(venue_id, max_claims=10)
    user_id = await concurrent_seed.user()

    results = await asyncio.gather(*(_reserve(concurrent_session_factory, offer_id, user_id) for _ in range(5)))

    outcomes = Counter(result.outcome for result in results)
    assert outcomes[LedgerOutcome.RESERVED] == 1
    assert outcomes[LedgerOutcome.DUPLICATE_CLAIM] == 4
    offer = await concurrent_seed.get_offer(offer_id)
    assert offer.claimed_count == 1


@pytest.mark.asyncio
async def test_sequential_duplicate_is_rejected(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=3)
    user_id = await seed.user()

    first = await _reserve(session_factory, offer_id, user_id)
    second = await _reserve(session_factory, offer_id, user_id)

    assert first.outcome is LedgerOutcome.RESERVED
    assert first.reservation_id is not None
    assert second.outcome is LedgerOutcome.DUPLICATE_CLAIM
    assert (await seed.get_offer(offer_id)).claimed_count == 1


@pytest.mark.asyncio
async def test_unknown_offer_is_reported(session_factory):
    result = await _reserve(session_factory, uuid4(), uuid4())

    assert result.outcome is LedgerOutcome.OFFER_NOT_FOUND
    assert not result.reserved


@pytest.mark.asyncio
async def test_release_is_idempotent_and_reopens_full_offer(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=1)
    user_id = await seed.user()

    reservation = await _reserve(session_factory, offer_id, user_id)
    assert reservation.reserved
    assert (await seed.get_offer(offer_id)).status == FlashOfferStatusEnum.FULL.value

    async with session_factory() as session:
        ledger = ClaimLedger(session)
        assert await ledger.release(reservation) is True
        assert await ledger.release(reservation) is False

    offer = await seed.get_offer(offer_id)
    assert offer.claimed_count == 0
    assert offer.status == FlashOfferStatusEnum.ACTIVE.value
    assert await _reservation_count(session_factory, offer_id) == 0


@pytest.mark.asyncio
async def test_reservation_after_release_takes_freed_slot(session_factory, seed):
    venue_id = await seed.venue()
    offer_id = await seed.offer(venue_id, max_claims=1)
    first_user, second_user = await seed.user(), await seed.user()

    reservation = await _reserve(session_factory, offer_id, first_user)
    blocked = await _reserve(session_factory, offer_id, second_user)
    assert blocked.outcome is LedgerOutcome.CAPACITY_EXCEEDED

    async with session_factory() as session:
        await ClaimLedger(session).release(reservation)

    retried = await _reserve(session_factory, offer_id, second_user)
    assert retried.outcome is LedgerOutcome.RESERVED
    offer = await seed.get_offer(offer_id)
    assert offer.claimed_count == 1
    assert isinstance(offer, FlashOffer)
