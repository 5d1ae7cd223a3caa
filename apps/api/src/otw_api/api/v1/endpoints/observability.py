"""Observability endpoints for flash offer claims and dispatch."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from otw_api.api.dependencies.security import require_dispatch_api_key
from otw_api.observability.flash_offers import get_flash_offer_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/flash-offers",
    dependencies=[Depends(require_dispatch_api_key)],
    summary="Flash offer observability snapshot",
)
async def get_flash_offer_snapshot() -> dict[str, object]:
    """Aggregated claim and dispatch counters for this process (requires the dispatch API key)."""
    store = get_flash_offer_store()
    return store.snapshot().as_dict()
