"""
FastAPI application for the pricing engine.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI

from pricing_engine.billing.dependencies import BillingCollaborators, load_collaborators
from pricing_engine.billing.router import register_billing_exception_handlers
from pricing_engine.billing.router import router as billing_router
from pricing_engine.db import check_database_health, create_all_tables_async, get_async_engine
from pricing_engine.settings import settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if settings.is_development or settings.is_testing:
        await create_all_tables_async()
        logger.info("database.tables.created")

    healthy = await check_database_health()
    logger.info("service.dependency.check", name="database", healthy=healthy)
    if not healthy and settings.is_production:
        raise RuntimeError("Database is not reachable")

    if app.state.billing_collaborators is None:
        logger.warning(
            "billing.collaborators.missing",
            message="Subscription endpoints will answer 503 until collaborators are configured",
        )

    logger.info("service.startup.complete")
    yield

    logger.info("service.shutdown.begin")
    await get_async_engine().dispose()
    logger.info("service.shutdown.complete")


def create_application(collaborators: BillingCollaborators | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Pricing Engine",
        description="Plans, coupons, proration and the subscription lifecycle",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    if collaborators is None and settings.billing.collaborators_factory:
        collaborators = load_collaborators(settings.billing.collaborators_factory)
    app.state.billing_collaborators = collaborators

    register_billing_exception_handlers(app)
    app.include_router(billing_router, prefix="/api/v1", tags=["Billing"])

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "version": settings.app_version,
            "database": await check_database_health(),
        }

    return app


app = create_application()
