"""Per-IP sliding-window rate limiting middleware."""

from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from poiguard.security.rate_limit import SlidingWindowLimiter

# Paths exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/ready", "/version"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per client IP. Lets traffic through if Redis is down."""

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.limiter = SlidingWindowLimiter("ratelimit:ip", requests_per_window, window_seconds)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Check rate limit, return 429 if exceeded."""
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        decision = await self.limiter.hit(client_ip)
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={
                    "Retry-After": str(decision.retry_after),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(decision.limit),
                },
            )

        response = await call_next(request)
        if not decision.degraded:
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
        return response
