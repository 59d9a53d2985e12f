"""Shared test fixtures.

Each test gets its own SQLite file database (aiosqlite) with the schema
created from the ORM metadata, and an in-process fake Redis.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.auth.jwt import create_access_token
from poiguard.config import get_settings
from poiguard.database import close_db, get_engine, get_session_factory, init_db
from poiguard.db.base import Base
from poiguard.db.models import POI, User
from poiguard.redis_client import use_redis

TEST_JWT_SECRET = "test-secret-key-that-is-at-least-32-bytes-long"

# Example POI used across the suite.
POI_LAT = 36.4273
POI_LON = -5.1483

_tag_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Point settings at a per-test sqlite file and a fixed JWT secret."""
    monkeypatch.setenv("POIGUARD_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'poiguard.db'}")
    monkeypatch.setenv("POIGUARD_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("POIGUARD_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Initialize the engine and create all tables."""
    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    """Install a fake Redis as the global client."""
    client = FakeAsyncRedis(decode_responses=True)
    use_redis(client)
    yield client
    await client.flushall()
    await client.aclose()
    use_redis(None)


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for setup and assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def client(database: None, fake_redis: FakeAsyncRedis) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the ASGI app (DB and Redis already initialized)."""
    from poiguard.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory: persist a user."""

    async def _make(display_name: str = "traveller", **kwargs: Any) -> User:
        fields: dict[str, Any] = {"total_points": 0, "is_banned": False, **kwargs}
        user = User(display_name=display_name, **fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_poi(db_session: AsyncSession) -> Callable[..., Awaitable[POI]]:
    """Factory: persist a POI with a unique tag UID."""

    async def _make(
        latitude: float = POI_LAT,
        longitude: float = POI_LON,
        *,
        tag_uid: str | None = None,
        points: int = 10,
        xp_reward: int = 25,
        category: str = "monument",
        is_active: bool = True,
        name: str = "Castillo",
    ) -> POI:
        poi = POI(
            name=name,
            category=category,
            latitude=latitude,
            longitude=longitude,
            tag_uid=tag_uid or f"04A1B2{next(_tag_counter):06X}",
            points=points,
            xp_reward=xp_reward,
            is_active=is_active,
        )
        db_session.add(poi)
        await db_session.commit()
        return poi

    return _make


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Factory: Authorization header for a user id."""

    def _headers(user_id: int, *, role: str = "user", session_token: str | None = None) -> dict[str, str]:
        token = create_access_token(user_id, role=role, session_token=session_token)
        return {"Authorization": f"Bearer {token}"}

    return _headers


def offset(lat: float, lon: float, north_m: float = 0.0, east_m: float = 0.0) -> tuple[float, float]:
    """Shift a coordinate by a number of meters."""
    d_lat = north_m / 111_320.0
    d_lon = east_m / (111_320.0 * math.cos(math.radians(lat)))
    return lat + d_lat, lon + d_lon


@pytest.fixture
def sample_payloads() -> Callable[..., list[dict[str, Any]]]:
    """Factory: GPS sample dicts around a point, 1 s apart, with a little noise."""

    def _samples(
        lat: float = POI_LAT,
        lon: float = POI_LON,
        *,
        count: int = 3,
        distance_m: float = 0.0,
        accuracy: float = 5.0,
        start_ms: int = 1_700_000_000_000,
        step_ms: int = 1000,
    ) -> list[dict[str, Any]]:
        out = []
        for i in range(count):
            s_lat, s_lon = offset(lat, lon, north_m=distance_m + i * 1.5, east_m=(i % 2) * 1.2)
            out.append({
                "latitude": s_lat,
                "longitude": s_lon,
                "accuracy": accuracy,
                "timestamp_ms": start_ms + i * step_ms,
            })
        return out

    return _samples


DEVICE_INFO: dict[str, Any] = {
    "user_agent": (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
    ),
    "screen_resolution": "390x844",
    "timezone": "Europe/Madrid",
    "language": "es-ES",
    "platform": "iPhone",
    "vendor": "Apple Computer, Inc.",
    "cookies_enabled": True,
    "do_not_track": "0",
}


@pytest.fixture
def device_info() -> dict[str, Any]:
    return dict(DEVICE_INFO)
