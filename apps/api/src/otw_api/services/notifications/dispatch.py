"""Flash offer push fan-out.

One run per offer: select the audience page by page, drop opted-out /
quiet-hours / capped users, hand the survivors to the provider in batches as
pages arrive and persist a completion marker on the offer so a re-delivered
trigger is a no-op. A run that fails after pushes reached the provider still
completes the marker; one that fails earlier gives back the venue quota and
resets the marker to pending.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.models.flash_offer import (
    FlashOffer,
    FlashOfferEvent,
    FlashOfferEventTypeEnum,
    FlashOfferPushStatusEnum,
    FlashOfferStatusEnum,
)
from otw_api.models.notification import DeviceToken
from otw_api.models.venue import Venue
from otw_api.observability.flash_offers import get_flash_offer_store
from otw_api.observability.tracing import get_tracer
from otw_api.services.flash_offers.eligibility import ensure_aware
from otw_api.services.flash_offers.errors import OfferNotFoundError

from .backend import PushDeliveryProvider, PushMessage, build_push_provider
from .batcher import DeliveryReport, DispatchBatcher
from .payload import build_flash_offer_payload
from .preferences import PreferenceFilter
from .rate_limits import RateLimiter, build_counter_store
from .targeting import Candidate, RecipientSelector

STALE_DISPATCH_AFTER = timedelta(minutes=10)

_tracer = get_tracer(__name__)


@dataclass
class DispatchSummary:
    offer_id: UUID
    status: str
    reason: str | None = None
    dry_run: bool = False
    candidates: int = 0
    eligible: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    recipients: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    unsent: int = 0
    retried: int = 0
    batches: int = 0
    tokens_deactivated: int = 0
    timed_out: bool = False
    resets_at: datetime | None = None
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "offer_id": str(self.offer_id),
            "status": self.status,
            "reason": self.reason,
            "dry_run": self.dry_run,
            "candidates": self.candidates,
            "eligible": self.eligible,
            "skipped": dict(self.skipped),
            "recipients": self.recipients,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "unsent": self.unsent,
            "retried": self.retried,
            "batches": self.batches,
            "tokens_deactivated": self.tokens_deactivated,
            "timed_out": self.timed_out,
            "resets_at": self.resets_at.isoformat() if self.resets_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _RunProgress:
    venue_reserved: bool = False
    batches_sent: int = 0


class NotificationDispatchEngine:
    """RecipientSelector, PreferenceFilter, RateLimiter and DispatchBatcher wired together."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provider: PushDeliveryProvider | None = None,
        rate_limiter: RateLimiter | None = None,
        selector: RecipientSelector | None = None,
        preference_filter: PreferenceFilter | None = None,
        batcher: DispatchBatcher | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session = db_session
        self._provider = provider or build_push_provider()
        self._rate_limiter = rate_limiter or RateLimiter(build_counter_store(db_session))
        self._selector = selector or RecipientSelector(db_session)
        self._preference_filter = preference_filter or PreferenceFilter(db_session)
        self._batcher = batcher or DispatchBatcher(self._provider)
        self._timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.flash_offer_dispatch_timeout_seconds
        )
        self._store = get_flash_offer_store()

    async def dispatch(self, offer_id: UUID, *, dry_run: bool = False, now: datetime | None = None) -> DispatchSummary:
        with _tracer.start_as_current_span("flash_offer.dispatch") as span:
            span.set_attribute("flash_offer.id", str(offer_id))
            span.set_attribute("flash_offer.dry_run", dry_run)
            summary = await self._dispatch(offer_id, dry_run=dry_run, now=now or datetime.now(timezone.utc))
            span.set_attribute("flash_offer.dispatch_status", summary.status)

        self._store.record_dispatch(
            summary.status,
            {"succeeded": summary.succeeded, "failed": summary.failed, "unsent": summary.unsent},
        )
        logger.bind(summary=summary.as_dict()).info("Flash offer dispatch finished", offer_id=str(offer_id))
        return summary

    async def _dispatch(self, offer_id: UUID, *, dry_run: bool, now: datetime) -> DispatchSummary:
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        deadline = started_at + self._timeout_seconds

        offer = await self._session.get(FlashOffer, offer_id, populate_existing=True)
        if offer is None:
            raise OfferNotFoundError(offer_id)
        venue = await self._session.get(Venue, offer.venue_id)
        if venue is None:
            raise OfferNotFoundError(offer_id)

        if offer.push_status == FlashOfferPushStatusEnum.COMPLETED.value:
            summary = DispatchSummary(offer_id=offer_id, status="skipped", reason="already_dispatched", dry_run=dry_run)
        elif not dry_run and not await self._claim_marker(offer_id, now):
            summary = DispatchSummary(offer_id=offer_id, status="skipped", reason="in_progress")
        else:
            venue_id = venue.id
            progress = _RunProgress()
            try:
                summary = await self._run(offer, venue, progress, dry_run=dry_run, now=now, deadline=deadline)
            except Exception:
                if not dry_run:
                    await self._recover_failed_run(offer_id, venue_id, progress, now)
                raise

        summary.duration_ms = int((loop.time() - started_at) * 1000)
        return summary

    async def _run(
        self,
        offer: FlashOffer,
        venue: Venue,
        progress: "_RunProgress",
        *,
        dry_run: bool,
        now: datetime,
        deadline: float,
    ) -> DispatchSummary:
        offer_id = offer.id

        closed = offer.status in (FlashOfferStatusEnum.CANCELLED.value, FlashOfferStatusEnum.EXPIRED.value)
        if closed or ensure_aware(offer.end_time) <= now:
            if not dry_run:
                await self._mark_completed(offer_id, now)
            return DispatchSummary(offer_id=offer_id, status="skipped", reason="offer_inactive", dry_run=dry_run)

        decision = await self._rate_limiter.admit_venue(venue.id, venue.subscription_tier, now=now)
        if not decision.admitted:
            if not dry_run:
                await self._release_marker(offer_id)
            return DispatchSummary(
                offer_id=offer_id,
                status="rate_limited",
                reason="venue_daily_quota",
                dry_run=dry_run,
                resets_at=decision.resets_at,
            )

        summary = DispatchSummary(offer_id=offer_id, status="completed", dry_run=dry_run)
        payload = build_flash_offer_payload(offer, venue)
        # At most one round of concurrent batches is buffered between selection pages and the provider.
        chunk_size = self._batcher.batch_size * self._batcher.concurrency
        buffered: List[PushMessage] = []
        sending = True

        async with aclosing(self._admitted_pages(offer, venue, summary, now=now, deadline=deadline)) as pages:
            async for recipients in pages:
                summary.recipients += len(recipients)
                buffered.extend(
                    PushMessage(token=token, user_id=candidate.user_id, payload=payload)
                    for candidate in recipients
                    for token in candidate.tokens
                )
                while sending and len(buffered) >= chunk_size:
                    chunk, buffered = buffered[:chunk_size], buffered[chunk_size:]
                    sending = await self._send_chunk(
                        chunk, venue, summary, progress, dry_run=dry_run, now=now, deadline=deadline
                    )
                if not sending:
                    break

        if sending and buffered:
            sending = await self._send_chunk(
                buffered, venue, summary, progress, dry_run=dry_run, now=now, deadline=deadline
            )
            buffered = []

        if summary.status == "rate_limited":
            await self._release_marker(offer_id)
            return summary
        summary.unsent += len(buffered)

        if dry_run:
            summary.status = "dry_run"
            return summary

        if not progress.venue_reserved:
            # Nothing was handed to the provider: the venue quota stays untouched.
            if summary.timed_out:
                await self._release_marker(offer_id)
                summary.status = "timed_out"
                return summary
            summary.reason = "no_recipients"
            await self._complete(offer_id, summary, now)
            return summary

        if progress.batches_sent == 0:
            # Nothing reached the provider, so neither the quota nor the marker is spent.
            await self._rate_limiter.release_venue_send(venue.id, now=now)
            progress.venue_reserved = False
            await self._release_marker(offer_id)
            summary.status = "timed_out"
            return summary

        if summary.timed_out:
            summary.status = "partial"
        await self._complete(offer_id, summary, now)
        return summary

    async def _send_chunk(
        self,
        messages: List[PushMessage],
        venue: Venue,
        summary: DispatchSummary,
        progress: "_RunProgress",
        *,
        dry_run: bool,
        now: datetime,
        deadline: float,
    ) -> bool:
        """Send one chunk; False once the run has to stop."""

        if dry_run:
            summary.batches += len(self._batcher.split(messages))
            return True

        if not progress.venue_reserved:
            # One venue send per offer, reserved right before the first push leaves.
            if not await self._rate_limiter.record_venue_send(venue.id, venue.subscription_tier, now=now):
                summary.status = "rate_limited"
                summary.reason = "venue_daily_quota"
                summary.resets_at = self._rate_limiter.resets_at(now)
                summary.unsent += len(messages)
                return False
            progress.venue_reserved = True

        loop = asyncio.get_running_loop()
        report = await self._batcher.dispatch(messages, timeout_seconds=max(deadline - loop.time(), 0.0))
        progress.batches_sent += report.batches_sent
        self._apply_report(summary, report)

        if report.sent_user_ids:
            await self._rate_limiter.record_user_sends(report.sent_user_ids, now=now)
        summary.tokens_deactivated += await self._deactivate_tokens(report.tokens_to_deactivate)
        return not report.timed_out

    async def _complete(self, offer_id: UUID, summary: DispatchSummary, now: datetime) -> None:
        self._session.add(
            FlashOfferEvent(
                offer_id=offer_id,
                event_type=FlashOfferEventTypeEnum.PUSH_SENT.value,
                metadata_json={
                    "targeted": summary.recipients,
                    "sent": summary.succeeded,
                    "failed": summary.failed,
                    "unsent": summary.unsent,
                    "status": summary.status,
                },
            )
        )
        await self._mark_completed(offer_id, now)

    async def _recover_failed_run(self, offer_id: UUID, venue_id: UUID, progress: "_RunProgress", now: datetime) -> None:
        """Leave the marker and quota consistent with what reached the provider, then let the error propagate."""

        logger.exception(
            "Flash offer dispatch failed",
            offer_id=str(offer_id),
            batches_sent=progress.batches_sent,
        )
        try:
            await self._session.rollback()
            if progress.batches_sent > 0:
                # Pushes already went out; a stale-marker retry would send them again.
                await self._mark_completed(offer_id, now)
                return
            if progress.venue_reserved:
                await self._rate_limiter.release_venue_send(venue_id, now=now)
            await self._release_marker(offer_id)
        except Exception:
            logger.exception("Could not reset flash offer dispatch state", offer_id=str(offer_id))

    async def _admitted_pages(
        self,
        offer: FlashOffer,
        venue: Venue,
        summary: DispatchSummary,
        *,
        now: datetime,
        deadline: float,
    ) -> AsyncIterator[List[Candidate]]:
        loop = asyncio.get_running_loop()
        summary.skipped = {"disabled": 0, "quiet_hours": 0, "distance": 0, "user_daily_cap": 0}

        async with aclosing(self._selector.select(offer, venue)) as pages:
            async for page in pages:
                summary.candidates += len(page)
                filtered = await self._preference_filter.filter(page, now=now)
                for reason, count in filtered.skipped.items():
                    summary.skipped[reason] = summary.skipped.get(reason, 0) + count
                admitted = await self._rate_limiter.admit_users(
                    [candidate.user_id for candidate in filtered.eligible], now=now
                )
                recipients = [candidate for candidate in filtered.eligible if candidate.user_id in admitted]
                summary.skipped["user_daily_cap"] += len(filtered.eligible) - len(recipients)
                summary.eligible += len(recipients)
                yield recipients
                if loop.time() >= deadline:
                    summary.timed_out = True
                    logger.warning("Flash offer audience selection hit the dispatch budget", offer_id=str(offer.id))
                    return

    @staticmethod
    def _apply_report(summary: DispatchSummary, report: DeliveryReport) -> None:
        summary.attempted += report.attempted
        summary.succeeded += report.succeeded
        summary.failed += report.failed
        summary.unsent += report.unsent
        summary.retried += report.retried
        summary.batches += report.batches_sent
        summary.timed_out = summary.timed_out or report.timed_out

    async def _claim_marker(self, offer_id: UUID, now: datetime) -> bool:
        result = await self._session.execute(
            update(FlashOffer)
            .where(
                FlashOffer.id == offer_id,
                or_(
                    FlashOffer.push_status == FlashOfferPushStatusEnum.PENDING.value,
                    and_(
                        FlashOffer.push_status == FlashOfferPushStatusEnum.IN_PROGRESS.value,
                        FlashOffer.push_started_at <= now - STALE_DISPATCH_AFTER,
                    ),
                ),
            )
            .values(push_status=FlashOfferPushStatusEnum.IN_PROGRESS.value, push_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.rowcount == 1

    async def _release_marker(self, offer_id: UUID) -> None:
        await self._session.execute(
            update(FlashOffer)
            .where(
                FlashOffer.id == offer_id,
                FlashOffer.push_status == FlashOfferPushStatusEnum.IN_PROGRESS.value,
            )
            .values(push_status=FlashOfferPushStatusEnum.PENDING.value, push_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

    async def _mark_completed(self, offer_id: UUID, now: datetime) -> None:
        await self._session.execute(
            update(FlashOffer)
            .where(FlashOffer.id == offer_id)
            .values(push_status=FlashOfferPushStatusEnum.COMPLETED.value, push_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

    async def _deactivate_tokens(self, tokens: List[str]) -> int:
        if not tokens:
            return 0
        result = await self._session.execute(
            update(DeviceToken)
            .where(DeviceToken.token.in_(tokens), DeviceToken.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        logger.info("Deactivated invalid device tokens", count=result.rowcount)
        return result.rowcount or 0


__all__ = ["DispatchSummary", "NotificationDispatchEngine", "STALE_DISPATCH_AFTER"]
