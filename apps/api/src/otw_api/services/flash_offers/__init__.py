"""Flash offer claim services."""

from .claims import ClaimResult, ClaimService
from .eligibility import EligibilityContext, EligibilityResult, OfferSnapshot, evaluate
from .errors import (
    ClaimErrorCode,
    LedgerUnavailableError,
    OfferNotFoundError,
    RedemptionError,
    TokenIssuanceExhaustedError,
)
from .ledger import ClaimLedger, LedgerOutcome, LedgerReservation
from .lifecycle import FlashOfferLifecycleService
from .tokens import TokenIssuer

__all__ = [
    "ClaimErrorCode",
    "ClaimLedger",
    "ClaimResult",
    "ClaimService",
    "EligibilityContext",
    "EligibilityResult",
    "FlashOfferLifecycleService",
    "LedgerOutcome",
    "LedgerReservation",
    "LedgerUnavailableError",
    "OfferNotFoundError",
    "OfferSnapshot",
    "RedemptionError",
    "TokenIssuanceExhaustedError",
    "TokenIssuer",
    "evaluate",
]
