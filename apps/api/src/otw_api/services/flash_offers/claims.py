"""Client-facing claim orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.models.flash_offer import (
    FlashOffer,
    FlashOfferClaim,
    FlashOfferClaimStatusEnum,
    FlashOfferEvent,
    FlashOfferEventTypeEnum,
    FlashOfferReservation,
)
from otw_api.models.venue import CheckIn
from otw_api.observability.flash_offers import get_flash_offer_store

from .eligibility import EligibilityContext, EligibilityResult, OfferSnapshot, ensure_aware, evaluate
from .errors import (
    CLAIM_ERROR_MESSAGES,
    RETRYABLE_CLAIM_ERRORS,
    ClaimErrorCode,
    LedgerUnavailableError,
    RedemptionError,
    TokenIssuanceExhaustedError,
)
from .ledger import ClaimLedger, LedgerOutcome, LedgerReservation
from .tokens import TokenIssuer


@dataclass(slots=True)
class ClaimResult:
    status: Literal["reserved", "error"]
    token: str | None = None
    expires_at: datetime | None = None
    claim_id: UUID | None = None
    code: ClaimErrorCode | None = None
    # Finer-grained cause kept for logs and audits; several reasons share one client code.
    reason: str | None = None

    @classmethod
    def reserved(cls, *, token: str, expires_at: datetime, claim_id: UUID) -> "ClaimResult":
        return cls(status="reserved", token=token, expires_at=expires_at, claim_id=claim_id, reason="reserved")

    @classmethod
    def error(cls, code: ClaimErrorCode, *, reason: str) -> "ClaimResult":
        return cls(status="error", code=code, reason=reason)

    @property
    def message(self) -> str | None:
        return CLAIM_ERROR_MESSAGES[self.code] if self.code else None

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CLAIM_ERRORS

    def as_payload(self) -> dict[str, Any]:
        if self.status == "reserved":
            return {
                "status": "reserved",
                "token": self.token,
                "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            }
        return {"status": "error", "code": self.code.value if self.code else None, "message": self.message}


_LEDGER_REJECTIONS = {
    LedgerOutcome.DUPLICATE_CLAIM: ClaimErrorCode.ALREADY_CLAIMED,
    LedgerOutcome.CAPACITY_EXCEEDED: ClaimErrorCode.OFFER_FULL,
    LedgerOutcome.OFFER_NOT_FOUND: ClaimErrorCode.OFFER_NOT_FOUND,
}


class ClaimService:
    """Eligibility, then ledger reservation, then token issuance."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: ClaimLedger | None = None,
        token_issuer: TokenIssuer | None = None,
        claim_ttl: timedelta | None = None,
        checkin_window: timedelta | None = None,
    ) -> None:
        self._session = db_session
        self._ledger = ledger or ClaimLedger(db_session)
        self._token_issuer = token_issuer or TokenIssuer(db_session)
        self._claim_ttl = claim_ttl or timedelta(hours=settings.flash_offer_claim_ttl_hours)
        self._checkin_window = checkin_window or timedelta(hours=settings.flash_offer_checkin_window_hours)
        self._store = get_flash_offer_store()

    async def claim(self, user_id: UUID, offer_id: UUID, *, now: datetime | None = None) -> ClaimResult:
        now = now or datetime.now(timezone.utc)

        try:
            offer = await self._session.get(FlashOffer, offer_id)
            if offer is None:
                return self._finish(ClaimResult.error(ClaimErrorCode.OFFER_NOT_FOUND, reason="offer_not_found"), offer_id, user_id)
            snapshot = OfferSnapshot.from_model(offer)
            context = EligibilityContext(
                offer=snapshot,
                now=now,
                has_existing_claim=await self._has_existing_claim(offer_id, user_id),
                is_checked_in=await self._is_checked_in(user_id, snapshot.venue_id, now),
            )
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Flash offer eligibility lookup failed", offer_id=str(offer_id), error=str(exc))
            return self._finish(self._unavailable("store_unavailable"), offer_id, user_id)

        eligibility = evaluate(context)
        if eligibility is not EligibilityResult.ELIGIBLE:
            await self._session.rollback()
            return self._finish(
                ClaimResult.error(eligibility.error_code, reason=eligibility.value),
                offer_id,
                user_id,
            )

        try:
            reservation = await self._ledger.reserve(offer_id, user_id)
        except LedgerUnavailableError:
            return self._finish(self._unavailable("ledger_unavailable"), offer_id, user_id)

        if not reservation.reserved:
            if reservation.outcome is LedgerOutcome.CAPACITY_EXCEEDED:
                await self._record_capacity_race(snapshot, user_id)
            return self._finish(
                ClaimResult.error(_LEDGER_REJECTIONS[reservation.outcome], reason=reservation.outcome.value),
                offer_id,
                user_id,
            )

        try:
            token = await self._token_issuer.issue(offer_id)
            claim = FlashOfferClaim(
                offer_id=offer_id,
                user_id=user_id,
                reservation_id=reservation.reservation_id,
                token=token,
                status=FlashOfferClaimStatusEnum.RESERVED.value,
                expires_at=now + self._claim_ttl,
            )
            self._session.add(claim)
            await self._session.flush()
            self._session.add(
                FlashOfferEvent(
                    offer_id=offer_id,
                    user_id=user_id,
                    event_type=FlashOfferEventTypeEnum.CLAIM.value,
                    metadata_json={"claim_id": str(claim.id)},
                )
            )
            await self._session.commit()
        except TokenIssuanceExhaustedError as exc:
            await self._session.rollback()
            logger.warning("Redemption token issuance exhausted", offer_id=str(offer_id), attempts=exc.attempts)
            await self._compensate(reservation)
            return self._finish(self._unavailable("token_exhausted"), offer_id, user_id)
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning("Claim row conflicted after reservation", offer_id=str(offer_id), error=str(exc))
            await self._compensate(reservation)
            return self._finish(self._unavailable("claim_conflict"), offer_id, user_id)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Claim persistence failed", offer_id=str(offer_id), error=str(exc))
            await self._compensate(reservation)
            return self._finish(self._unavailable("store_unavailable"), offer_id, user_id)

        result = ClaimResult.reserved(token=token, expires_at=claim.expires_at, claim_id=claim.id)
        return self._finish(result, offer_id, user_id)

    async def get_claim_status(self, user_id: UUID, offer_id: UUID) -> FlashOfferClaim | None:
        result = await self._session.execute(
            select(FlashOfferClaim).where(
                FlashOfferClaim.offer_id == offer_id,
                FlashOfferClaim.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def redeem(
        self,
        offer_id: UUID,
        token: str,
        *,
        staff_user_id: UUID,
        now: datetime | None = None,
    ) -> FlashOfferClaim:
        """Mark a reserved claim as redeemed by venue staff."""

        now = now or datetime.now(timezone.utc)
        result = await self._session.execute(
            select(FlashOfferClaim).where(
                FlashOfferClaim.offer_id == offer_id,
                FlashOfferClaim.token == token,
            )
        )
        claim = result.scalar_one_or_none()
        if claim is None:
            raise RedemptionError("invalid_token", "This claim is not valid or has already been used.")
        if claim.status == FlashOfferClaimStatusEnum.REDEEMED.value:
            raise RedemptionError("already_redeemed", "This claim has already been redeemed.")
        if claim.status == FlashOfferClaimStatusEnum.EXPIRED.value or ensure_aware(claim.expires_at) <= now:
            raise RedemptionError("expired", "This claim has expired and can no longer be redeemed.")

        transition = await self._session.execute(
            update(FlashOfferClaim)
            .where(
                FlashOfferClaim.id == claim.id,
                FlashOfferClaim.status == FlashOfferClaimStatusEnum.RESERVED.value,
            )
            .values(
                status=FlashOfferClaimStatusEnum.REDEEMED.value,
                redeemed_at=now,
                redeemed_by_user_id=staff_user_id,
            )
            .execution_options(synchronize_session=False)
        )
        if transition.rowcount != 1:
            await self._session.rollback()
            raise RedemptionError("already_redeemed", "This claim has already been redeemed.")

        self._session.add(
            FlashOfferEvent(
                offer_id=offer_id,
                user_id=claim.user_id,
                event_type=FlashOfferEventTypeEnum.REDEEM.value,
                metadata_json={"claim_id": str(claim.id), "staff_user_id": str(staff_user_id)},
            )
        )
        await self._session.commit()
        await self._session.refresh(claim)
        logger.info("Flash offer claim redeemed", offer_id=str(offer_id), claim_id=str(claim.id))
        return claim

    async def _has_existing_claim(self, offer_id: UUID, user_id: UUID) -> bool:
        claim_id = await self._session.scalar(
            select(FlashOfferClaim.id).where(
                FlashOfferClaim.offer_id == offer_id,
                FlashOfferClaim.user_id == user_id,
            )
        )
        if claim_id is not None:
            return True
        reservation_id = await self._session.scalar(
            select(FlashOfferReservation.id).where(
                FlashOfferReservation.offer_id == offer_id,
                FlashOfferReservation.user_id == user_id,
            )
        )
        return reservation_id is not None

    async def _is_checked_in(self, user_id: UUID, venue_id: UUID, now: datetime) -> bool:
        check_in_id = await self._session.scalar(
            select(CheckIn.id)
            .where(
                CheckIn.user_id == user_id,
                CheckIn.venue_id == venue_id,
                CheckIn.checked_out_at.is_(None),
                CheckIn.checked_in_at >= now - self._checkin_window,
            )
            .limit(1)
        )
        return check_in_id is not None

    async def _compensate(self, reservation: LedgerReservation) -> None:
        try:
            released = await self._ledger.release(reservation)
        except LedgerUnavailableError:
            # The lifecycle sweep releases reservations that never got a claim row.
            logger.error(
                "Claim reservation compensation failed",
                offer_id=str(reservation.offer_id),
                user_id=str(reservation.user_id),
            )
            return
        self._store.record_compensation(released=released)
        logger.info(
            "Claim reservation released",
            offer_id=str(reservation.offer_id),
            user_id=str(reservation.user_id),
            released=released,
        )

    async def _record_capacity_race(self, snapshot: OfferSnapshot, user_id: UUID) -> None:
        self._store.record_capacity_race()
        logger.warning(
            "Flash offer capacity race",
            offer_id=str(snapshot.id),
            user_id=str(user_id),
            snapshot_claimed_count=snapshot.claimed_count,
            max_claims=snapshot.max_claims,
        )
        try:
            self._session.add(
                FlashOfferEvent(
                    offer_id=snapshot.id,
                    user_id=user_id,
                    event_type=FlashOfferEventTypeEnum.CAPACITY_RACE.value,
                    metadata_json={
                        "snapshot_claimed_count": snapshot.claimed_count,
                        "max_claims": snapshot.max_claims,
                    },
                )
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("Failed to record capacity race event", offer_id=str(snapshot.id), error=str(exc))

    @staticmethod
    def _unavailable(reason: str) -> ClaimResult:
        return ClaimResult.error(ClaimErrorCode.TEMPORARILY_UNAVAILABLE, reason=reason)

    def _finish(self, result: ClaimResult, offer_id: UUID, user_id: UUID) -> ClaimResult:
        self._store.record_claim_outcome(result.reason or result.status)
        logger.info(
            "Flash offer claim processed",
            offer_id=str(offer_id),
            user_id=str(user_id),
            status=result.status,
            code=result.code.value if result.code else None,
            reason=result.reason,
        )
        return result


__all__ = ["ClaimResult", "ClaimService"]
