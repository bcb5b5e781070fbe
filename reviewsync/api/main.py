"""
Review Sync - FastAPI Application

Provides:
- Cron trigger for the sync orchestrator (`/cron/sync`)
- Draft preparation endpoints (`/drafts/*`)
- Health and Prometheus metrics
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from reviewsync import __version__
from reviewsync.api.errors import register_exception_handlers
from reviewsync.api.middleware import RequestIDMiddleware
from reviewsync.api.routes import cron, drafts, health
from reviewsync.config import get_settings
from reviewsync.db.client import close_db, close_db_pool, init_db
from reviewsync.monitoring.logging import configure_logging

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()
    logger.info("Starting review sync API", version=__version__, environment=settings.environment)

    if settings.environment == "test":
        logger.info("Skipping database initialization in test environment")
    else:
        await init_db()
        logger.info("PostgreSQL connection initialized")

    yield

    logger.info("Shutting down review sync API")
    await close_db_pool()
    await close_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Review Sync API",
        description="Provider review sync, durable job queue and AI draft preparation",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)

    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router, tags=["Health"])
    app.include_router(cron.router)
    app.include_router(drafts.router)
    return app


app = create_app()
