"""Client-observed claim lifecycle.

``reduce`` is a pure function from the current ``ClaimView`` and an explicit
server-derived ``ClaimEvent`` to the next view. It never performs I/O, so the
same transitions drive the HTTP client, UI bindings and tests.

    CLAIMABLE -> LOADING -> CLAIMED | INELIGIBLE | FULL | ERROR
    ERROR -> LOADING (retry)

``LOADING`` ignores further submits. The optimistic remaining-claims counter is
decremented when a submit is accepted and restored on every non-success result.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from otw_api.services.flash_offers.errors import CLAIM_ERROR_MESSAGES, ClaimErrorCode


class ClaimState(str, Enum):
    CLAIMABLE = "claimable"
    LOADING = "loading"
    CLAIMED = "claimed"
    INELIGIBLE = "ineligible"
    FULL = "full"
    ERROR = "error"


class ClaimEventType(str, Enum):
    SUBMIT = "submit"
    RESERVED = "reserved"
    REJECTED = "rejected"
    FAILED = "failed"
    TIMEOUT = "timeout"
    STATUS_SYNCED = "status_synced"


@dataclass(frozen=True, slots=True)
class ClaimEvent:
    type: ClaimEventType
    token: str | None = None
    expires_at: str | None = None
    code: ClaimErrorCode | None = None
    message: str | None = None
    # Server-confirmed remaining claims, when the response carries it.
    remaining: int | None = None

    @classmethod
    def submit(cls) -> "ClaimEvent":
        return cls(ClaimEventType.SUBMIT)

    @classmethod
    def reserved(cls, token: str, expires_at: str | None = None) -> "ClaimEvent":
        return cls(ClaimEventType.RESERVED, token=token, expires_at=expires_at)

    @classmethod
    def rejected(cls, code: ClaimErrorCode, message: str | None = None) -> "ClaimEvent":
        return cls(ClaimEventType.REJECTED, code=code, message=message)

    @classmethod
    def failed(cls, message: str | None = None) -> "ClaimEvent":
        return cls(ClaimEventType.FAILED, message=message)

    @classmethod
    def timeout(cls) -> "ClaimEvent":
        return cls(ClaimEventType.TIMEOUT)

    @classmethod
    def status_synced(
        cls,
        *,
        token: str | None = None,
        expires_at: str | None = None,
        expired: bool = False,
        remaining: int | None = None,
    ) -> "ClaimEvent":
        code = ClaimErrorCode.ALREADY_CLAIMED if expired else None
        return cls(ClaimEventType.STATUS_SYNCED, token=token, expires_at=expires_at, code=code, remaining=remaining)


@dataclass(frozen=True, slots=True)
class ClaimView:
    state: ClaimState = ClaimState.CLAIMABLE
    remaining: int | None = None
    confirmed_remaining: int | None = None
    token: str | None = None
    expires_at: str | None = None
    error_code: ClaimErrorCode | None = None
    message: str | None = None
    # Set after a timeout or transport failure: the server may have completed the claim.
    needs_status_check: bool = False

    @classmethod
    def initial(cls, remaining: int | None = None) -> "ClaimView":
        return cls(remaining=remaining, confirmed_remaining=remaining)

    @property
    def can_submit(self) -> bool:
        if self.state in (ClaimState.CLAIMABLE, ClaimState.ERROR):
            return True
        # Checking in makes an ineligible offer claimable again.
        return self.state is ClaimState.INELIGIBLE and self.error_code is ClaimErrorCode.NOT_CHECKED_IN

    @property
    def is_terminal(self) -> bool:
        return self.state in (ClaimState.CLAIMED, ClaimState.INELIGIBLE, ClaimState.FULL)


_REJECTION_STATES: dict[ClaimErrorCode, ClaimState] = {
    ClaimErrorCode.OFFER_FULL: ClaimState.FULL,
    ClaimErrorCode.NOT_CHECKED_IN: ClaimState.INELIGIBLE,
    ClaimErrorCode.OFFER_EXPIRED: ClaimState.INELIGIBLE,
    ClaimErrorCode.ALREADY_CLAIMED: ClaimState.INELIGIBLE,
    ClaimErrorCode.OFFER_NOT_FOUND: ClaimState.INELIGIBLE,
    ClaimErrorCode.TEMPORARILY_UNAVAILABLE: ClaimState.ERROR,
}

_TRANSPORT_FAILURE_MESSAGE = CLAIM_ERROR_MESSAGES[ClaimErrorCode.TEMPORARILY_UNAVAILABLE]


def reduce(view: ClaimView, event: ClaimEvent) -> ClaimView:
    """Return the next view. Events that do not apply to the current state are ignored."""

    if event.type is ClaimEventType.SUBMIT:
        if not view.can_submit:
            return view
        return replace(
            view,
            state=ClaimState.LOADING,
            remaining=None if view.remaining is None else max(view.remaining - 1, 0),
            error_code=None,
            message=None,
        )

    if event.type is ClaimEventType.STATUS_SYNCED:
        return _apply_status(view, event)

    if view.state is not ClaimState.LOADING:
        return view

    if event.type is ClaimEventType.RESERVED:
        return replace(
            view,
            state=ClaimState.CLAIMED,
            token=event.token,
            expires_at=event.expires_at,
            confirmed_remaining=view.remaining,
            needs_status_check=False,
        )

    rolled_back = view.confirmed_remaining

    if event.type is ClaimEventType.REJECTED:
        code = event.code or ClaimErrorCode.TEMPORARILY_UNAVAILABLE
        state = _REJECTION_STATES[code]
        return replace(
            view,
            state=state,
            remaining=0 if state is ClaimState.FULL else rolled_back,
            confirmed_remaining=0 if state is ClaimState.FULL else rolled_back,
            error_code=code,
            message=event.message or CLAIM_ERROR_MESSAGES[code],
            needs_status_check=False,
        )

    # FAILED / TIMEOUT: outcome unknown until the claim status is re-queried.
    return replace(
        view,
        state=ClaimState.ERROR,
        remaining=rolled_back,
        error_code=None,
        message=event.message or _TRANSPORT_FAILURE_MESSAGE,
        needs_status_check=True,
    )


def _apply_status(view: ClaimView, event: ClaimEvent) -> ClaimView:
    if view.state in (ClaimState.LOADING, ClaimState.CLAIMED):
        return view

    remaining = event.remaining if event.remaining is not None else view.confirmed_remaining
    if event.token is not None and event.code is None:
        return replace(
            view,
            state=ClaimState.CLAIMED,
            token=event.token,
            expires_at=event.expires_at,
            remaining=remaining,
            confirmed_remaining=remaining,
            error_code=None,
            message=None,
            needs_status_check=False,
        )
    if event.code is not None:
        return replace(
            view,
            state=ClaimState.INELIGIBLE,
            remaining=remaining,
            confirmed_remaining=remaining,
            error_code=event.code,
            message=CLAIM_ERROR_MESSAGES[event.code],
            needs_status_check=False,
        )
    if view.state is ClaimState.FULL or (remaining is not None and remaining <= 0):
        return replace(view, state=ClaimState.FULL, remaining=0, confirmed_remaining=0, needs_status_check=False)
    if view.state is ClaimState.ERROR:
        return replace(
            view,
            state=ClaimState.CLAIMABLE,
            remaining=remaining,
            confirmed_remaining=remaining,
            error_code=None,
            message=None,
            needs_status_check=False,
        )
    return replace(view, remaining=remaining, confirmed_remaining=remaining, needs_status_check=False)


__all__ = ["ClaimEvent", "ClaimEventType", "ClaimState", "ClaimView", "reduce"]
