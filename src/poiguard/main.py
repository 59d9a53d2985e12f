"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from poiguard.config import get_settings
from poiguard.database import close_db, init_db
from poiguard.gamification.router import router as gamification_router
from poiguard.health.router import router as health_router
from poiguard.middleware import setup_middleware
from poiguard.redis_client import close_redis, init_redis
from poiguard.security.router import router as security_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    logger.info("app_started", environment=settings.environment, version=settings.app_version)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="POI Guard API",
        description="Visit validation, anti-cheat reward issuance and session anomaly tracking",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(security_router)
    app.include_router(gamification_router)

    return app


app = create_app()
