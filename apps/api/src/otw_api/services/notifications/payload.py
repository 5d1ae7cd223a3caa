from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from otw_api.models.flash_offer import FlashOffer
from otw_api.models.venue import Venue

FLASH_OFFER_NOTIFICATION_TYPE = "flash_offer"
_MAX_BODY_LENGTH = 178


@dataclass(frozen=True, slots=True)
class PushPayload:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    android_priority: str = "high"
    apns_priority: str = "10"

    def to_fcm_message(self, token: str) -> Dict[str, Any]:
        return {
            "message": {
                "token": token,
                "notification": {"title": self.title, "body": self.body},
                "data": dict(self.data),
                "android": {"priority": self.android_priority},
                "apns": {
                    "headers": {"apns-priority": self.apns_priority},
                    "payload": {"aps": {"sound": "default"}},
                },
            }
        }


def build_flash_offer_payload(offer: FlashOffer, venue: Venue) -> PushPayload:
    body = (offer.description or "").strip() or (offer.value_cap or "")
    if len(body) > _MAX_BODY_LENGTH:
        body = body[: _MAX_BODY_LENGTH - 1].rstrip() + "…"
    return PushPayload(
        title=f"🔥 {offer.title} at {venue.name}",
        body=body,
        data={
            "type": FLASH_OFFER_NOTIFICATION_TYPE,
            "offer_id": str(offer.id),
            "venue_id": str(venue.id),
        },
    )


__all__ = ["FLASH_OFFER_NOTIFICATION_TYPE", "PushPayload", "build_flash_offer_payload"]
