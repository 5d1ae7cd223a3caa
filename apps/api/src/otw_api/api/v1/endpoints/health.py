from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness database check failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    lifecycle_worker = getattr(request.app.state, "flash_offer_lifecycle_worker", None)
    if settings.flash_offer_lifecycle_worker_enabled and lifecycle_worker is not None:
        running = bool(getattr(lifecycle_worker, "is_running", False))
        worker_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Flash offer lifecycle worker not running"
        if lifecycle_worker.last_error:
            worker_status = "error"
            detail = lifecycle_worker.last_error
            status = "degraded" if status != "error" else status
        elif not running:
            status = "degraded" if status != "error" else status
        components["flash_offer_lifecycle"] = ComponentStatus(status=worker_status, detail=detail)
    else:
        components["flash_offer_lifecycle"] = ComponentStatus(
            status="disabled",
            detail="Flash offer lifecycle worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
