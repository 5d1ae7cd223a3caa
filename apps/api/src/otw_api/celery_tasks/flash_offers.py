from __future__ import annotations

from uuid import UUID

from loguru import logger

from otw_api.celery_app import celery_app
from otw_api.core.settings import settings
from otw_api.tasks.flash_offer_dispatch import dispatch_offer_sync, run_lifecycle_sync


@celery_app.task(
    name="flash_offers.dispatch_notifications",
    queue=settings.flash_offer_task_queue,
)
def dispatch_flash_offer_notifications(offer_id: str, dry_run: bool = False) -> dict[str, object]:
    """Fan out push notifications for one offer via Celery."""

    return dispatch_offer_sync(offer_id=UUID(offer_id), dry_run=dry_run)


@celery_app.task(
    name="flash_offers.sweep_lifecycle",
    queue=settings.flash_offer_task_queue,
)
def sweep_flash_offer_lifecycle() -> dict[str, object]:
    """Run one lifecycle sweep via Celery."""

    if not settings.flash_offer_lifecycle_worker_enabled:
        logger.info("Flash offer lifecycle sweeps disabled; skipping Celery task.")
        return {"skipped": True}
    return run_lifecycle_sync()
