from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from otw_api.core.settings import settings
from otw_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import FlashOfferLifecycleWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    lifecycle_worker = FlashOfferLifecycleWorker(
        session_factory=_session_factory,
        interval_seconds=settings.flash_offer_lifecycle_interval_seconds,
    )
    app.state.flash_offer_lifecycle_worker = lifecycle_worker

    lifecycle_enabled = settings.flash_offer_lifecycle_worker_enabled
    if lifecycle_enabled:
        lifecycle_worker.start()
        logger.info(
            "Flash offer lifecycle worker enabled",
            interval_seconds=lifecycle_worker.interval_seconds,
        )
    else:
        logger.info(
            "Flash offer lifecycle worker disabled",
            reason="flash_offer_lifecycle_worker_enabled is false",
        )

    try:
        yield
    finally:
        if lifecycle_enabled and lifecycle_worker.is_running:
            await lifecycle_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the OTW flash offer API."""
    configure_logging(
        service_name="otw-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="OTW Flash Offers API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="otw-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
