"""Background workers supporting async processing."""

from .flash_offer_lifecycle import FlashOfferLifecycleWorker

__all__ = ["FlashOfferLifecycleWorker"]
