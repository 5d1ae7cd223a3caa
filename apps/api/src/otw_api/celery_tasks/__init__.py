"""Celery task modules for the flash offer engine."""

# Import submodules so Celery autodiscovery registers tasks.
from . import flash_offers as _flash_offers  # noqa: F401

__all__ = ["_flash_offers"]
