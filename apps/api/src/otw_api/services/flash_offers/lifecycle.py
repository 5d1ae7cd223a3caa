"""Offer and claim status sweeps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict

from loguru import logger
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.models.flash_offer import (
    FlashOffer,
    FlashOfferClaim,
    FlashOfferClaimStatusEnum,
    FlashOfferReservation,
    FlashOfferStatusEnum,
)

from .ledger import ClaimLedger, LedgerOutcome, LedgerReservation

ORPHAN_RESERVATION_GRACE = timedelta(minutes=5)

_OPEN_STATUSES = (
    FlashOfferStatusEnum.SCHEDULED.value,
    FlashOfferStatusEnum.ACTIVE.value,
    FlashOfferStatusEnum.FULL.value,
)


class FlashOfferLifecycleService:
    """Moves offers and claims through their time-driven statuses.

    Claim expiry never gives capacity back: ``claimed_count`` only changes
    through the ledger.
    """

    def __init__(self, db_session: AsyncSession, *, ledger: ClaimLedger | None = None) -> None:
        self._session = db_session
        self._ledger = ledger or ClaimLedger(db_session)

    async def run(self, *, now: datetime | None = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        summary = {
            "expired_offers": await self.expire_offers(now),
            "activated_offers": await self.activate_scheduled(now),
            "filled_offers": await self.mark_full(),
            "expired_claims": await self.expire_claims(now),
        }
        await self._session.commit()
        summary["released_reservations"] = await self.release_orphaned_reservations(now)
        return summary

    async def activate_scheduled(self, now: datetime) -> int:
        result = await self._session.execute(
            update(FlashOffer)
            .where(
                FlashOffer.status == FlashOfferStatusEnum.SCHEDULED.value,
                FlashOffer.start_time <= now,
                FlashOffer.end_time > now,
            )
            .values(status=FlashOfferStatusEnum.ACTIVE.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def expire_offers(self, now: datetime) -> int:
        result = await self._session.execute(
            update(FlashOffer)
            .where(FlashOffer.status.in_(_OPEN_STATUSES), FlashOffer.end_time <= now)
            .values(status=FlashOfferStatusEnum.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def mark_full(self) -> int:
        result = await self._session.execute(
            update(FlashOffer)
            .where(
                FlashOffer.status == FlashOfferStatusEnum.ACTIVE.value,
                FlashOffer.claimed_count >= FlashOffer.max_claims,
            )
            .values(status=FlashOfferStatusEnum.FULL.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def expire_claims(self, now: datetime) -> int:
        result = await self._session.execute(
            update(FlashOfferClaim)
            .where(
                FlashOfferClaim.status == FlashOfferClaimStatusEnum.RESERVED.value,
                FlashOfferClaim.expires_at <= now,
            )
            .values(status=FlashOfferClaimStatusEnum.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def release_orphaned_reservations(
        self,
        now: datetime,
        *,
        grace: timedelta = ORPHAN_RESERVATION_GRACE,
    ) -> int:
        """Release reservations whose claim row was never written."""

        result = await self._session.execute(
            select(FlashOfferReservation.offer_id, FlashOfferReservation.user_id)
            .outerjoin(
                FlashOfferClaim,
                and_(
                    FlashOfferClaim.offer_id == FlashOfferReservation.offer_id,
                    FlashOfferClaim.user_id == FlashOfferReservation.user_id,
                ),
            )
            .where(FlashOfferClaim.id.is_(None), FlashOfferReservation.created_at <= now - grace)
        )
        orphans = result.all()
        await self._session.rollback()

        released = 0
        for offer_id, user_id in orphans:
            reservation = LedgerReservation(outcome=LedgerOutcome.RESERVED, offer_id=offer_id, user_id=user_id)
            if await self._ledger.release(reservation):
                released += 1
                logger.warning(
                    "Released orphaned flash offer reservation",
                    offer_id=str(offer_id),
                    user_id=str(user_id),
                )
        return released


__all__ = ["FlashOfferLifecycleService", "ORPHAN_RESERVATION_GRACE"]
