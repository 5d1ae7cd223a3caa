"""Worker wiring for periodic flash offer lifecycle sweeps."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.jobs.flash_offers import run_flash_offer_lifecycle

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class FlashOfferLifecycleWorker:
    """Runs the lifecycle sweep on a fixed interval until stopped."""

    # meta: worker: flash-offer-lifecycle

    def __init__(self, session_factory: SessionFactory, *, interval_seconds: int | None = None) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.flash_offer_lifecycle_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_summary: Dict[str, Any] | None = None
        self.last_error: str | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Flash offer lifecycle worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Flash offer lifecycle worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        summary = await run_flash_offer_lifecycle(session_factory=self._session_factory)
        self.last_summary = summary
        self.last_error = None
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # keep the loop alive; the next tick retries
                self.last_error = str(exc)
                logger.exception("Flash offer lifecycle iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
