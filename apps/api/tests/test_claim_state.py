from __future__ import annotations

import pytest

from otw_api.client import ClaimEvent, ClaimState, ClaimView, reduce
from otw_api.services.flash_offers import ClaimErrorCode


def _loading(remaining: int = 5) -> ClaimView:
    return reduce(ClaimView.initial(remaining), ClaimEvent.submit())


def test_submit_enters_loading_and_decrements_optimistically():
    view = _loading(5)

    assert view.state is ClaimState.LOADING
    assert view.remaining == 4
    assert view.confirmed_remaining == 5


def test_submit_is_ignored_while_loading():
    view = _loading(5)

    assert reduce(view, ClaimEvent.submit()) is view


def test_reserved_moves_to_claimed():
    view = reduce(_loading(5), ClaimEvent.reserved("482913", "2026-10-19T21:00:00+00:00"))

    assert view.state is ClaimState.CLAIMED
    assert view.token == "482913"
    assert view.remaining == 4
    assert view.confirmed_remaining == 4
    assert view.is_terminal
    assert not view.can_submit


@pytest.mark.parametrize(
    "code,state",
    [
        (ClaimErrorCode.NOT_CHECKED_IN, ClaimState.INELIGIBLE),
        (ClaimErrorCode.OFFER_EXPIRED, ClaimState.INELIGIBLE),
        (ClaimErrorCode.ALREADY_CLAIMED, ClaimState.INELIGIBLE),
        (ClaimErrorCode.OFFER_NOT_FOUND, ClaimState.INELIGIBLE),
        (ClaimErrorCode.TEMPORARILY_UNAVAILABLE, ClaimState.ERROR),
    ],
)
def test_rejections_roll_back_the_counter(code, state):
    view = reduce(_loading(5), ClaimEvent.rejected(code))

    assert view.state is state
    assert view.remaining == 5
    assert view.error_code is code
    assert view.message
    assert view.needs_status_check is False


def test_full_rejection_zeroes_remaining():
    view = reduce(_loading(1), ClaimEvent.rejected(ClaimErrorCode.OFFER_FULL))

    assert view.state is ClaimState.FULL
    assert view.remaining == 0
    assert view.message == "This offer has been fully claimed. Check back for new offers!"
    assert not view.can_submit


def test_server_message_wins_over_default():
    view = reduce(_loading(), ClaimEvent.rejected(ClaimErrorCode.OFFER_EXPIRED, "Offer ended at 9pm"))

    assert view.message == "Offer ended at 9pm"


def test_only_not_checked_in_can_be_retried_from_ineligible():
    not_checked_in = reduce(_loading(), ClaimEvent.rejected(ClaimErrorCode.NOT_CHECKED_IN))
    already_claimed = reduce(_loading(), ClaimEvent.rejected(ClaimErrorCode.ALREADY_CLAIMED))

    assert not_checked_in.can_submit
    assert reduce(not_checked_in, ClaimEvent.submit()).state is ClaimState.LOADING
    assert not already_claimed.can_submit
    assert reduce(already_claimed, ClaimEvent.submit()) is already_claimed


@pytest.mark.parametrize("event", [ClaimEvent.timeout(), ClaimEvent.failed()])
def test_unknown_outcome_requires_status_check(event):
    view = reduce(_loading(3), event)

    assert view.state is ClaimState.ERROR
    assert view.remaining == 3
    assert view.needs_status_check is True
    assert view.can_submit


def test_late_server_events_are_ignored_outside_loading():
    claimable = ClaimView.initial(2)

    assert reduce(claimable, ClaimEvent.reserved("111111")) is claimable
    assert reduce(claimable, ClaimEvent.timeout()) is claimable


def test_status_sync_recovers_claim_after_timeout():
    errored = reduce(_loading(3), ClaimEvent.timeout())

    view = reduce(errored, ClaimEvent.status_synced(token="271828", expires_at="2026-10-19T21:00:00+00:00", remaining=2))

    assert view.state is ClaimState.CLAIMED
    assert view.token == "271828"
    assert view.remaining == 2
    assert view.needs_status_check is False


def test_status_sync_without_claim_returns_to_claimable():
    errored = reduce(_loading(3), ClaimEvent.failed())

    view = reduce(errored, ClaimEvent.status_synced(remaining=3))

    assert view.state is ClaimState.CLAIMABLE
    assert view.remaining == 3
    assert view.error_code is None


def test_status_sync_marks_sold_out_offer_full():
    view = reduce(ClaimView.initial(2), ClaimEvent.status_synced(remaining=0))

    assert view.state is ClaimState.FULL
    assert view.remaining == 0


def test_status_sync_with_expired_claim_is_ineligible():
    view = reduce(ClaimView.initial(2), ClaimEvent.status_synced(expired=True, remaining=1))

    assert view.state is ClaimState.INELIGIBLE
    assert view.error_code is ClaimErrorCode.ALREADY_CLAIMED


def test_status_sync_is_ignored_while_loading_or_claimed():
    loading = _loading()
    claimed = reduce(loading, ClaimEvent.reserved("123456"))

    assert reduce(loading, ClaimEvent.status_synced(remaining=0)) is loading
    assert reduce(claimed, ClaimEvent.status_synced(remaining=0)) is claimed


def test_unknown_remaining_stays_unknown():
    view = reduce(ClaimView.initial(), ClaimEvent.submit())

    assert view.remaining is None
