"""Redis connection pool for counters, bans and strikes."""

import redis.asyncio as redis
from redis.exceptions import RedisError

_pool: redis.Redis | None = None

# Anything that means "the counter store is not answering". Callers on the
# rate-limit path treat these as fail-open.
STORE_UNAVAILABLE: tuple[type[BaseException], ...] = (RedisError, OSError, RuntimeError)


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


def use_redis(client: redis.Redis | None) -> None:
    """Install an already-built client (arq worker context, tests)."""
    global _pool  # noqa: PLW0603
    _pool = client


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
