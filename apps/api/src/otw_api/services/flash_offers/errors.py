"""Closed error taxonomy for the flash offer claim path."""

from __future__ import annotations

from enum import Enum


class ClaimErrorCode(str, Enum):
    NOT_CHECKED_IN = "NOT_CHECKED_IN"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    OFFER_FULL = "OFFER_FULL"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    OFFER_NOT_FOUND = "OFFER_NOT_FOUND"
    TEMPORARILY_UNAVAILABLE = "TEMPORARILY_UNAVAILABLE"


CLAIM_ERROR_MESSAGES: dict[ClaimErrorCode, str] = {
    ClaimErrorCode.NOT_CHECKED_IN: "Check in at this venue to claim the offer.",
    ClaimErrorCode.OFFER_EXPIRED: "This offer is no longer available.",
    ClaimErrorCode.OFFER_FULL: "This offer has been fully claimed. Check back for new offers!",
    ClaimErrorCode.ALREADY_CLAIMED: "You've already claimed this offer. View your claim in My Claims.",
    ClaimErrorCode.OFFER_NOT_FOUND: "Offer not found.",
    ClaimErrorCode.TEMPORARILY_UNAVAILABLE: "We couldn't complete your claim. Please try again.",
}

RETRYABLE_CLAIM_ERRORS = frozenset({ClaimErrorCode.TEMPORARILY_UNAVAILABLE})


class FlashOfferError(Exception):
    """Base class for flash offer domain errors."""


class OfferNotFoundError(FlashOfferError):
    def __init__(self, offer_id: object) -> None:
        super().__init__(f"Flash offer {offer_id} not found")
        self.offer_id = offer_id


class LedgerUnavailableError(FlashOfferError):
    """The authoritative claim store could not confirm the operation."""


class TokenIssuanceExhaustedError(FlashOfferError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"Unable to issue a unique redemption token after {attempts} attempts")
        self.attempts = attempts


class RedemptionError(FlashOfferError):
    """Raised when a redemption token cannot be honoured."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


__all__ = [
    "CLAIM_ERROR_MESSAGES",
    "ClaimErrorCode",
    "FlashOfferError",
    "LedgerUnavailableError",
    "OfferNotFoundError",
    "RETRYABLE_CLAIM_ERRORS",
    "RedemptionError",
    "TokenIssuanceExhaustedError",
]
