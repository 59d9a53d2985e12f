"""Bounded-wait GPS sample collection."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from poiguard.security.gps_scorer import GPSSample
from poiguard.security.sample_collector import InsufficientSamplesError, collect_samples


class FakeLocationSource:
    """Async iterator yielding fixes with a delay; records whether it was closed."""

    def __init__(self, count: int, delay: float = 0.0, hang_after: int | None = None) -> None:
        self.count = count
        self.delay = delay
        self.hang_after = hang_after
        self.closed = False

    async def _gen(self) -> AsyncIterator[GPSSample]:
        for i in range(self.count):
            if self.hang_after is not None and i >= self.hang_after:
                await asyncio.sleep(3600)
            await asyncio.sleep(self.delay)
            yield GPSSample(latitude=36.4273, longitude=-5.1483 + i * 1e-5, accuracy=5.0, timestamp_ms=i * 1000)

    def __aiter__(self) -> FakeLocationSource:
        self._it = self._gen()
        return self

    async def __anext__(self) -> GPSSample:
        return await self._it.__anext__()

    async def aclose(self) -> None:
        self.closed = True
        await self._it.aclose()


class TestCollectSamples:
    @pytest.mark.asyncio
    async def test_stops_at_target(self):
        source = FakeLocationSource(count=20)
        samples = await collect_samples(source, target=5, minimum=3, timeout=1.0)
        assert len(samples) == 5
        assert source.closed

    @pytest.mark.asyncio
    async def test_partial_result_at_deadline(self):
        """Three fixes arrive, then the source stalls: the partial batch is returned."""
        source = FakeLocationSource(count=10, hang_after=3)
        samples = await collect_samples(source, target=5, minimum=3, timeout=0.2)
        assert len(samples) == 3
        assert source.closed

    @pytest.mark.asyncio
    async def test_too_few_samples_raises(self):
        source = FakeLocationSource(count=10, hang_after=1)
        with pytest.raises(InsufficientSamplesError) as exc_info:
            await collect_samples(source, target=5, minimum=3, timeout=0.1)
        assert len(exc_info.value.collected) == 1
        assert exc_info.value.minimum == 3

    @pytest.mark.asyncio
    async def test_source_exhausted_early(self):
        source = FakeLocationSource(count=4)
        samples = await collect_samples(source, target=5, minimum=3, timeout=1.0)
        assert len(samples) == 4

    @pytest.mark.asyncio
    async def test_never_waits_past_deadline(self):
        source = FakeLocationSource(count=10, hang_after=0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(InsufficientSamplesError):
            await collect_samples(source, target=5, minimum=1, timeout=0.1)
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_minimum_above_target_is_rejected(self):
        with pytest.raises(ValueError):
            await collect_samples(FakeLocationSource(count=1), target=2, minimum=3)
