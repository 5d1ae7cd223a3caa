from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Mapping


@dataclass
class FlashOfferSnapshot:
    claims: Dict[str, int]
    ledger: Dict[str, int]
    dispatch: Dict[str, int]
    deliveries: Dict[str, int]
    rate_limits: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "claims": dict(self.claims),
            "ledger": dict(self.ledger),
            "dispatch": dict(self.dispatch),
            "deliveries": dict(self.deliveries),
            "rate_limits": dict(self.rate_limits),
        }


class FlashOfferObservabilityStore:
    """In-process counters for the claim path and the push dispatch pipeline."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._claims: Dict[str, int] = defaultdict(int)
        self._ledger: Dict[str, int] = defaultdict(int)
        self._dispatch: Dict[str, int] = defaultdict(int)
        self._deliveries: Dict[str, int] = defaultdict(int)
        self._rate_limits: Dict[str, int] = defaultdict(int)

    def record_claim_outcome(self, outcome: str) -> None:
        with self._lock:
            self._claims[outcome] += 1

    def record_capacity_race(self) -> None:
        with self._lock:
            self._ledger["capacity_races"] += 1

    def record_compensation(self, *, released: bool) -> None:
        with self._lock:
            self._ledger["compensations"] += 1
            if not released:
                self._ledger["compensations_noop"] += 1

    def record_dispatch(self, outcome: str, deliveries: Mapping[str, int] | None = None) -> None:
        with self._lock:
            self._dispatch["runs"] += 1
            self._dispatch[outcome] += 1
            for key, value in (deliveries or {}).items():
                self._deliveries[key] += int(value)

    def record_rate_limit_rejection(self, scope: str, count: int = 1) -> None:
        with self._lock:
            self._rate_limits[scope] += count

    def snapshot(self) -> FlashOfferSnapshot:
        with self._lock:
            return FlashOfferSnapshot(
                claims=dict(self._claims),
                ledger=dict(self._ledger),
                dispatch=dict(self._dispatch),
                deliveries=dict(self._deliveries),
                rate_limits=dict(self._rate_limits),
            )

    def reset(self) -> None:
        with self._lock:
            self._claims.clear()
            self._ledger.clear()
            self._dispatch.clear()
            self._deliveries.clear()
            self._rate_limits.clear()


_STORE = FlashOfferObservabilityStore()


def get_flash_offer_store() -> FlashOfferObservabilityStore:
    return _STORE


__all__ = ["FlashOfferObservabilityStore", "FlashOfferSnapshot", "get_flash_offer_store"]
