"""Bounded-wait GPS sample collection for clients.

Location fixes arrive one at a time from an async source. Collection stops at
`target` samples or at the deadline, whichever comes first; a partial result
is fine as long as `minimum` samples arrived.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from poiguard.security.gps_scorer import GPSSample


class InsufficientSamplesError(Exception):
    """Fewer than the minimum number of samples arrived before the deadline."""

    def __init__(self, collected: list[GPSSample], minimum: int) -> None:
        super().__init__(f"collected {len(collected)} GPS samples, need at least {minimum}")
        self.collected = collected
        self.minimum = minimum


async def collect_samples(
    source: AsyncIterator[GPSSample],
    target: int = 5,
    minimum: int = 3,
    timeout: float = 10.0,
) -> list[GPSSample]:
    """Consume `source` until `target` samples or `timeout` seconds elapse.

    Never waits past the deadline. Cancellation of the caller propagates.
    """
    if minimum > target:
        msg = f"minimum ({minimum}) cannot exceed target ({target})"
        raise ValueError(msg)

    collected: list[GPSSample] = []
    try:
        async with asyncio.timeout(timeout):
            async for sample in source:
                collected.append(sample)
                if len(collected) >= target:
                    break
    except TimeoutError:
        pass
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()

    if len(collected) < minimum:
        raise InsufficientSamplesError(collected, minimum)
    return collected
