"""Redis-backed sliding-window limiter, temporary bans and strikes.

Every operation here fails open: if Redis is unreachable the request is
allowed and `rate_limit_store_unavailable` is logged. A counter-store outage
must not lock users out.
"""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
import structlog

from poiguard.redis_client import STORE_UNAVAILABLE, get_redis

logger = structlog.get_logger()


def ban_key(user_id: int) -> str:
    return f"ban:{user_id}"


def strikes_key(user_id: int) -> str:
    return f"cheat:strikes:{user_id}"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    degraded: bool = False


class SlidingWindowLimiter:
    """Per-key sliding window over a sorted set of hit timestamps.

    Prune, add, count and expire run as one MULTI/EXEC so concurrent hits on
    the same key are counted exactly once each.
    """

    def __init__(
        self,
        prefix: str,
        limit: int,
        window_seconds: int,
        client: redis.Redis | None = None,
    ) -> None:
        self.prefix = prefix
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = client

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def hit(self, key: str) -> RateDecision:
        """Record one hit and decide. Rejected hits do not consume capacity."""
        rkey = self._key(key)
        now_ms = int(time.time() * 1000)
        window_ms = self.window_seconds * 1000
        member = f"{now_ms}-{secrets.token_hex(4)}"

        try:
            client = self._client or get_redis()
            pipe = client.pipeline(transaction=True)
            pipe.zremrangebyscore(rkey, 0, now_ms - window_ms)
            pipe.zadd(rkey, {member: now_ms})
            pipe.zcard(rkey)
            pipe.pexpire(rkey, window_ms)
            pipe.zrange(rkey, 0, 0, withscores=True)
            results: list[Any] = await pipe.execute()

            count: int = results[2]
            if count <= self.limit:
                return RateDecision(allowed=True, limit=self.limit, remaining=self.limit - count)

            await client.zrem(rkey, member)
        except STORE_UNAVAILABLE as exc:
            logger.warning("rate_limit_store_unavailable", op="hit", key=rkey, error=str(exc))
            return RateDecision(allowed=True, limit=self.limit, remaining=self.limit, degraded=True)

        oldest = results[4]
        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        retry_after = max(1, math.ceil((oldest_ms + window_ms - now_ms) / 1000))
        return RateDecision(allowed=False, limit=self.limit, remaining=0, retry_after=retry_after)


async def active_ban(user_id: int, client: redis.Redis | None = None) -> int | None:
    """Seconds left on a temporary ban, or None."""
    try:
        client = client or get_redis()
        ttl: int = await client.ttl(ban_key(user_id))
    except STORE_UNAVAILABLE as exc:
        logger.warning("rate_limit_store_unavailable", op="ban_check", user_id=user_id, error=str(exc))
        return None
    if ttl == -2:
        return None
    # -1: key without expiry. Should not happen, treat as a fresh ban window.
    return ttl if ttl > 0 else 1


async def set_ban(
    user_id: int,
    seconds: int,
    reason: str,
    client: redis.Redis | None = None,
) -> bool:
    try:
        client = client or get_redis()
        await client.set(ban_key(user_id), reason, ex=seconds)
    except STORE_UNAVAILABLE as exc:
        logger.warning("rate_limit_store_unavailable", op="ban_set", user_id=user_id, error=str(exc))
        return False
    logger.warning("user_temporarily_banned", user_id=user_id, seconds=seconds, reason=reason)
    return True


async def strike_count(user_id: int, client: redis.Redis | None = None) -> int:
    try:
        client = client or get_redis()
        value = await client.get(strikes_key(user_id))
    except STORE_UNAVAILABLE as exc:
        logger.warning("rate_limit_store_unavailable", op="strike_read", user_id=user_id, error=str(exc))
        return 0
    return int(value) if value else 0


async def add_strike(user_id: int, ttl_seconds: int, client: redis.Redis | None = None) -> int:
    """Increment the strike counter and refresh its expiry. Returns the new count."""
    try:
        client = client or get_redis()
        pipe = client.pipeline(transaction=True)
        pipe.incr(strikes_key(user_id))
        pipe.expire(strikes_key(user_id), ttl_seconds)
        results: list[Any] = await pipe.execute()
    except STORE_UNAVAILABLE as exc:
        logger.warning("rate_limit_store_unavailable", op="strike_add", user_id=user_id, error=str(exc))
        return 0
    return int(results[0])
