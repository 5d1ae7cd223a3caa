"""CLI + helpers for flash offer dispatch and lifecycle sweeps.

Queue runners (Celery, cron) call the ``*_sync`` helpers so they reuse the
same async job code without importing FastAPI.  The session factory stays
injectable for tests.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any
from uuid import UUID

from otw_api.db.session import async_session, engine
from otw_api.jobs.flash_offers import (
    SessionFactory,
    dispatch_flash_offer_notifications,
    run_flash_offer_lifecycle,
)
from otw_api.services.notifications import PushDeliveryProvider


async def dispatch_offer(
    *,
    offer_id: UUID,
    dry_run: bool = False,
    session_factory: SessionFactory | None = None,
    provider: PushDeliveryProvider | None = None,
) -> dict[str, Any]:
    return await dispatch_flash_offer_notifications(
        session_factory=session_factory or async_session,
        offer_id=offer_id,
        dry_run=dry_run,
        provider=provider,
    )


async def run_lifecycle(*, session_factory: SessionFactory | None = None) -> dict[str, Any]:
    return await run_flash_offer_lifecycle(session_factory=session_factory or async_session)


async def _run_and_dispose(coro: Any) -> dict[str, Any]:
    # Each asyncio.run gets a fresh loop; pooled connections must not outlive it.
    try:
        return await coro
    finally:
        await engine.dispose()


def dispatch_offer_sync(
    *,
    offer_id: UUID,
    dry_run: bool = False,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Synchronous helper so Celery/cron jobs can reuse the async dispatcher."""

    return asyncio.run(
        _run_and_dispose(dispatch_offer(offer_id=offer_id, dry_run=dry_run, session_factory=session_factory))
    )


def run_lifecycle_sync(*, session_factory: SessionFactory | None = None) -> dict[str, Any]:
    return asyncio.run(_run_and_dispose(run_lifecycle(session_factory=session_factory)))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flash offer dispatch utilities.")
    sub = parser.add_subparsers(dest="command", required=True)

    dispatch = sub.add_parser("dispatch", help="Send push notifications for one offer.")
    dispatch.add_argument("--offer-id", required=True, help="UUID of the flash offer.")
    dispatch.add_argument("--dry-run", action="store_true", help="Select recipients without sending.")

    sub.add_parser("lifecycle", help="Run one lifecycle sweep.")
    return parser


async def _async_main(args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "dispatch":
        return await dispatch_offer(offer_id=UUID(args.offer_id), dry_run=args.dry_run)
    if args.command == "lifecycle":
        return await run_lifecycle()
    raise ValueError(f"Unsupported command {args.command}")  # pragma: no cover - argparse guards this.


def cli() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    result = asyncio.run(_async_main(args))
    print(json.dumps(result, default=str, indent=2))


if __name__ == "__main__":  # pragma: no cover
    cli()
