"""Advisory claim eligibility checks.

The evaluator works on a snapshot that may already be stale by the time the
ledger runs, so a passing result only means the claim is worth attempting.
Capacity is enforced by :class:`ClaimLedger`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from otw_api.models.flash_offer import FlashOffer, FlashOfferStatusEnum

from .errors import ClaimErrorCode


class EligibilityResult(str, Enum):
    ELIGIBLE = "eligible"
    OFFER_EXPIRED = "offer_expired"
    OFFER_FULL = "offer_full"
    ALREADY_CLAIMED = "already_claimed"
    NOT_CHECKED_IN = "not_checked_in"

    @property
    def error_code(self) -> ClaimErrorCode | None:
        return _RESULT_TO_ERROR.get(self)


_RESULT_TO_ERROR = {
    EligibilityResult.OFFER_EXPIRED: ClaimErrorCode.OFFER_EXPIRED,
    EligibilityResult.OFFER_FULL: ClaimErrorCode.OFFER_FULL,
    EligibilityResult.ALREADY_CLAIMED: ClaimErrorCode.ALREADY_CLAIMED,
    EligibilityResult.NOT_CHECKED_IN: ClaimErrorCode.NOT_CHECKED_IN,
}

_CLOSED_STATUSES = frozenset({FlashOfferStatusEnum.CANCELLED.value, FlashOfferStatusEnum.EXPIRED.value})


@dataclass(frozen=True, slots=True)
class OfferSnapshot:
    id: UUID
    venue_id: UUID
    status: str
    start_time: datetime
    end_time: datetime
    max_claims: int
    claimed_count: int

    @classmethod
    def from_model(cls, offer: FlashOffer) -> "OfferSnapshot":
        return cls(
            id=offer.id,
            venue_id=offer.venue_id,
            status=offer.status,
            start_time=ensure_aware(offer.start_time),
            end_time=ensure_aware(offer.end_time),
            max_claims=offer.max_claims,
            claimed_count=offer.claimed_count,
        )


@dataclass(frozen=True, slots=True)
class EligibilityContext:
    offer: OfferSnapshot
    now: datetime
    has_existing_claim: bool
    is_checked_in: bool


def evaluate(context: EligibilityContext) -> EligibilityResult:
    """Run the checks in order and stop at the first failure."""

    offer = context.offer
    now = ensure_aware(context.now)

    # A not-yet-started offer shares the expired outcome; there is no separate code for it.
    if offer.status in _CLOSED_STATUSES or not (offer.start_time <= now < offer.end_time):
        return EligibilityResult.OFFER_EXPIRED
    if offer.claimed_count >= offer.max_claims:
        return EligibilityResult.OFFER_FULL
    if context.has_existing_claim:
        return EligibilityResult.ALREADY_CLAIMED
    if not context.is_checked_in:
        return EligibilityResult.NOT_CHECKED_IN
    return EligibilityResult.ELIGIBLE


def ensure_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["EligibilityContext", "EligibilityResult", "OfferSnapshot", "ensure_aware", "evaluate"]
