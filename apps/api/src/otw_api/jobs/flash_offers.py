"""Job entrypoints for flash offer dispatch and lifecycle sweeps."""

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.services.flash_offers import FlashOfferLifecycleService
from otw_api.services.notifications import NotificationDispatchEngine, PushDeliveryProvider

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_flash_offer_lifecycle(
    *,
    session_factory: SessionFactory,
    now: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Activate, fill and expire offers; expire stale claims."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        service = FlashOfferLifecycleService(managed_session)
        try:
            summary: Dict[str, Any] = await service.run(now=now)
        except Exception:
            await managed_session.rollback()
            raise

    if any(summary.values()):
        logger.bind(summary=summary).info("Flash offer lifecycle sweep applied changes")
    else:
        logger.debug("Flash offer lifecycle sweep found nothing to do")
    return summary


async def dispatch_flash_offer_notifications(
    *,
    session_factory: SessionFactory,
    offer_id: UUID,
    dry_run: bool = False,
    provider: PushDeliveryProvider | None = None,
) -> Dict[str, Any]:
    """Run the notification fan-out for a single offer."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        engine = NotificationDispatchEngine(managed_session, provider=provider)
        summary = await engine.dispatch(offer_id, dry_run=dry_run)
    return summary.as_dict()


__all__ = ["dispatch_flash_offer_notifications", "run_flash_offer_lifecycle"]
