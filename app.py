"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization
and consumer shutdown through the lifespan hook.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from venue_pricing.controllers.demand_controller import router as demand_router
from venue_pricing.controllers.pricing_controller import router as pricing_router
from venue_pricing.controllers.ratesheet_controller import router as ratesheet_router
from venue_pricing.controllers.surge_controller import router as surge_router
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.approval_service import ApprovalService
from venue_pricing.services.event_pipeline import EventPipeline
from venue_pricing.services.event_ratesheets import EventRatesheetService
from venue_pricing.services.pricing_service import PricingService
from venue_pricing.services.surge_materializer import SurgeMaterializer
from venue_pricing.services.surge_service import SurgeService, SurgeUpdateService
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    The demand buffer lives inside the event pipeline, so its lifetime is
    the application's.
    """
    settings = settings or get_settings()

    # --- Repository (document store access) ---
    repository = PricingRepository(settings)

    # --- Services ---
    materializer = SurgeMaterializer(repository=repository, settings=settings)
    pricing_service = PricingService(repository=repository, settings=settings)
    surge_service = SurgeService(
        repository=repository,
        settings=settings,
        materializer=materializer,
    )
    surge_updater = SurgeUpdateService(
        repository=repository,
        settings=settings,
        materializer=materializer,
    )
    approval_service = ApprovalService(repository=repository, settings=settings)
    event_ratesheet_service = EventRatesheetService(repository=repository, settings=settings)
    event_pipeline = EventPipeline(
        repository=repository,
        settings=settings,
        surge_updater=surge_updater,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize storage and consumers; drain consumers on shutdown."""
        _startup(app)
        try:
            yield
        finally:
            _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(pricing_router)
    app.include_router(surge_router)
    app.include_router(ratesheet_router)
    app.include_router(demand_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, object]:
        pipeline: EventPipeline = app.state.event_pipeline
        return {
            "status": "ok",
            "version": settings.app_version,
            "consumers": {worker.group: worker.running for worker in pipeline.workers},
            "pendingBookingEvents": pipeline.booking_channel.pending(),
        }

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.pricing_service = pricing_service
    app.state.surge_service = surge_service
    app.state.approval_service = approval_service
    app.state.event_ratesheet_service = event_ratesheet_service
    app.state.event_pipeline = event_pipeline

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Demo data is seeded only into an empty store.
      3. Consumers start last, once storage is ready.
    """
    settings: Settings = app.state.settings
    repository: PricingRepository = app.state.repository
    pipeline: EventPipeline = app.state.event_pipeline

    logger.info("Startup: initializing document store")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo hierarchy (skipped if customers exist)")
        repository.seed_demo_data()

    if settings.start_consumers:
        logger.info("Startup: starting event consumers")
        pipeline.start()

    logger.info("Startup complete | app=%s | version=%s", settings.app_name, settings.app_version)


def _shutdown(app: FastAPI) -> None:
    pipeline: EventPipeline = app.state.event_pipeline
    logger.info("Shutdown: draining event consumers")
    pipeline.stop(drain=True, timeout=10.0)


# Module-level app object for uvicorn
app = create_app()
