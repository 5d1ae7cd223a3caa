"""Client-side claim lifecycle helpers."""

from .claim_client import ClaimClient
from .claim_state import ClaimEvent, ClaimEventType, ClaimState, ClaimView, reduce

__all__ = ["ClaimClient", "ClaimEvent", "ClaimEventType", "ClaimState", "ClaimView", "reduce"]
