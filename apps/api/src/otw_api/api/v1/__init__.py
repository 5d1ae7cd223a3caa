from fastapi import APIRouter

from .endpoints import (
    flash_offers,
    health,
    notifications,
    observability,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(flash_offers.router)
router.include_router(notifications.router)
router.include_router(observability.router)
