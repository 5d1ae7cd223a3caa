"""Batched push delivery with bounded parallelism and a wall-clock budget."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set
from uuid import UUID

from loguru import logger

from otw_api.core.settings import settings

from .backend import DeliveryOutcome, DeliveryStatus, PushDeliveryProvider, PushMessage


@dataclass(frozen=True, slots=True)
class DeliveryAttempt:
    token: str
    user_id: UUID
    outcome: DeliveryStatus
    batch_id: int
    error_code: str | None = None


@dataclass
class DeliveryReport:
    batches_total: int = 0
    batches_sent: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    unsent: int = 0
    timed_out: bool = False
    tokens_to_deactivate: List[str] = field(default_factory=list)
    sent_user_ids: Set[UUID] = field(default_factory=set)
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "batches_total": self.batches_total,
            "batches_sent": self.batches_sent,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "unsent": self.unsent,
            "timed_out": self.timed_out,
            "invalid_tokens": len(self.tokens_to_deactivate),
        }


class DispatchBatcher:
    """Split messages into provider-sized batches and send them.

    Transient failures get one retry inside the same run. Batches that have
    not started when the budget runs out are reported as unsent and never
    reach the provider; batches already in flight at that point count as
    sent with an unknown (failed) outcome.
    """

    def __init__(
        self,
        provider: PushDeliveryProvider,
        *,
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._provider = provider
        requested = batch_size or settings.flash_offer_dispatch_batch_size
        self.batch_size = max(min(requested, provider.max_batch_size), 1)
        self.concurrency = max(concurrency or settings.flash_offer_dispatch_concurrency, 1)

    def split(self, messages: Sequence[PushMessage]) -> List[List[PushMessage]]:
        return [list(messages[index : index + self.batch_size]) for index in range(0, len(messages), self.batch_size)]

    async def dispatch(
        self,
        messages: Sequence[PushMessage],
        *,
        timeout_seconds: float | None = None,
    ) -> DeliveryReport:
        batches = self.split(messages)
        report = DeliveryReport(batches_total=len(batches))
        if not batches:
            return report

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds if timeout_seconds is not None else None
        semaphore = asyncio.Semaphore(self.concurrency)
        started: Dict[int, List[PushMessage]] = {}

        def budget_left() -> bool:
            return deadline is None or loop.time() < deadline

        async def run_batch(batch_id: int, batch: List[PushMessage]) -> None:
            async with semaphore:
                if not budget_left():
                    return
                started[batch_id] = batch
                outcomes = await self._send(batch_id, batch)
                retry = [message for message in batch if outcomes[message.token].status is DeliveryStatus.TRANSIENT_FAILURE]
                if retry and budget_left():
                    report.retried += len(retry)
                    outcomes.update(await self._send(batch_id, retry))
                self._record_batch(report, batch_id, batch, outcomes)

        tasks = [asyncio.create_task(run_batch(batch_id, batch)) for batch_id, batch in enumerate(batches)]
        remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
        _, pending = await asyncio.wait(tasks, timeout=remaining)
        if pending:
            report.timed_out = True
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        recorded = {attempt.batch_id for attempt in report.attempts}
        for batch_id, batch in enumerate(batches):
            if batch_id in recorded:
                continue
            if batch_id in started:
                # In flight when the budget ran out; the provider may have delivered it.
                self._record_batch(report, batch_id, batch, {})
            else:
                report.unsent += len(batch)

        if report.timed_out:
            logger.warning(
                "Push dispatch budget exhausted",
                batches_total=report.batches_total,
                batches_sent=report.batches_sent,
                unsent=report.unsent,
            )
        return report

    async def _send(self, batch_id: int, batch: Sequence[PushMessage]) -> Dict[str, DeliveryOutcome]:
        try:
            outcomes = await self._provider.send(batch)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # provider faults are per-batch, never fatal to the run
            logger.exception("Push provider batch failed", batch_id=batch_id, size=len(batch), error=str(exc))
            outcomes = []
        by_token = {outcome.token: outcome for outcome in outcomes}
        for message in batch:
            by_token.setdefault(
                message.token,
                DeliveryOutcome(token=message.token, status=DeliveryStatus.TRANSIENT_FAILURE, error_code="NO_OUTCOME"),
            )
        return by_token

    @staticmethod
    def _record_batch(
        report: DeliveryReport,
        batch_id: int,
        batch: Sequence[PushMessage],
        outcomes: Dict[str, DeliveryOutcome],
    ) -> None:
        report.batches_sent += 1
        for message in batch:
            outcome = outcomes.get(message.token)
            status = outcome.status if outcome else DeliveryStatus.TRANSIENT_FAILURE
            error_code = outcome.error_code if outcome else "TIMEOUT"
            report.attempted += 1
            report.sent_user_ids.add(message.user_id)
            report.attempts.append(
                DeliveryAttempt(
                    token=message.token,
                    user_id=message.user_id,
                    outcome=status,
                    batch_id=batch_id,
                    error_code=error_code,
                )
            )
            if status is DeliveryStatus.SUCCESS:
                report.succeeded += 1
            else:
                report.failed += 1
                if status is DeliveryStatus.INVALID_TOKEN:
                    report.tokens_to_deactivate.append(message.token)


__all__ = ["DeliveryAttempt", "DeliveryReport", "DispatchBatcher"]
