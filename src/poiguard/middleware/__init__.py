"""Middleware registration."""

from fastapi import FastAPI

from poiguard.config import Settings
from poiguard.middleware.cors import setup_cors
from poiguard.middleware.error_handler import setup_error_handlers
from poiguard.middleware.logging import setup_logging
from poiguard.middleware.rate_limit import RateLimitMiddleware
from poiguard.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order (last added = outermost).
    CORS is added last so it also wraps 429 responses from the rate limiter.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
