"""Authoritative claim reservations.

A reservation is one ``flash_offer_reservations`` row plus one unit of the
offer's ``claimed_count``. Both are written in a single transaction: the
row insert is guarded by the (offer, user) unique constraint and the counter
moves through a conditional ``UPDATE ... WHERE claimed_count < max_claims``
so the store itself decides who gets the last slot.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NoReturn
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.models.flash_offer import FlashOffer, FlashOfferReservation, FlashOfferStatusEnum

from .errors import LedgerUnavailableError


class LedgerOutcome(str, Enum):
    RESERVED = "reserved"
    DUPLICATE_CLAIM = "duplicate_claim"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    OFFER_NOT_FOUND = "offer_not_found"


@dataclass(frozen=True, slots=True)
class LedgerReservation:
    outcome: LedgerOutcome
    offer_id: UUID
    user_id: UUID
    reservation_id: UUID | None = None

    @property
    def reserved(self) -> bool:
        return self.outcome is LedgerOutcome.RESERVED


class ClaimLedger:
    """Reserve-or-reject against an offer's capacity.

    Every call ends the session's current transaction (commit on success,
    rollback on rejection), so callers must not rely on ORM instances loaded
    before the call.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session

    async def reserve(self, offer_id: UUID, user_id: UUID) -> LedgerReservation:
        reservation_id = uuid4()
        self._session.add(FlashOfferReservation(id=reservation_id, offer_id=offer_id, user_id=user_id))
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            return await self._classify_insert_conflict(offer_id, user_id)
        except SQLAlchemyError as exc:
            await self._fail_closed("reserve", offer_id, exc)

        increment = (
            update(FlashOffer)
            .where(FlashOffer.id == offer_id, FlashOffer.claimed_count < FlashOffer.max_claims)
            .values(
                claimed_count=FlashOffer.claimed_count + 1,
                status=case(
                    (FlashOffer.claimed_count + 1 >= FlashOffer.max_claims, FlashOfferStatusEnum.FULL.value),
                    else_=FlashOffer.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(increment)
            if result.rowcount != 1:
                await self._session.rollback()
                exists = await self._session.scalar(select(FlashOffer.id).where(FlashOffer.id == offer_id))
                outcome = LedgerOutcome.CAPACITY_EXCEEDED if exists is not None else LedgerOutcome.OFFER_NOT_FOUND
                await self._session.rollback()
                return LedgerReservation(outcome=outcome, offer_id=offer_id, user_id=user_id)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._fail_closed("reserve", offer_id, exc)

        return LedgerReservation(
            outcome=LedgerOutcome.RESERVED,
            offer_id=offer_id,
            user_id=user_id,
            reservation_id=reservation_id,
        )

    async def release(self, reservation: LedgerReservation) -> bool:
        """Undo a reservation. Returns False when there was nothing left to undo."""

        try:
            removed = await self._session.execute(
                delete(FlashOfferReservation)
                .where(
                    FlashOfferReservation.offer_id == reservation.offer_id,
                    FlashOfferReservation.user_id == reservation.user_id,
                )
                .execution_options(synchronize_session=False)
            )
            if removed.rowcount == 0:
                await self._session.rollback()
                return False

            await self._session.execute(
                update(FlashOffer)
                .where(FlashOffer.id == reservation.offer_id, FlashOffer.claimed_count > 0)
                .values(
                    claimed_count=FlashOffer.claimed_count - 1,
                    status=case(
                        (FlashOffer.status == FlashOfferStatusEnum.FULL.value, FlashOfferStatusEnum.ACTIVE.value),
                        else_=FlashOffer.status,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._fail_closed("release", reservation.offer_id, exc)
        return True

    async def _classify_insert_conflict(self, offer_id: UUID, user_id: UUID) -> LedgerReservation:
        try:
            existing = await self._session.scalar(
                select(FlashOfferReservation.id).where(
                    FlashOfferReservation.offer_id == offer_id,
                    FlashOfferReservation.user_id == user_id,
                )
            )
            await self._session.rollback()
        except SQLAlchemyError as exc:
            await self._fail_closed("reserve", offer_id, exc)
        # Foreign key failures land here too when the offer row is missing.
        outcome = LedgerOutcome.DUPLICATE_CLAIM if existing is not None else LedgerOutcome.OFFER_NOT_FOUND
        return LedgerReservation(outcome=outcome, offer_id=offer_id, user_id=user_id)

    async def _fail_closed(self, operation: str, offer_id: UUID, exc: SQLAlchemyError) -> NoReturn:
        try:
            await self._session.rollback()
        except SQLAlchemyError as rollback_exc:
            logger.warning("Claim ledger rollback failed", offer_id=str(offer_id), error=str(rollback_exc))
        logger.error(
            "Claim ledger operation failed",
            operation=operation,
            offer_id=str(offer_id),
            error=str(exc),
        )
        raise LedgerUnavailableError(f"Claim ledger {operation} failed") from exc


__all__ = ["ClaimLedger", "LedgerOutcome", "LedgerReservation"]
