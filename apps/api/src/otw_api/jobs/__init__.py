"""Recurring job entrypoints for flash offers."""

__all__ = [
    "flash_offers",
]
