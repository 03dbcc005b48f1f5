from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 0.005, jitter: float = 0.005) -> float:
    """Compute exponential backoff with jitter."""
    delay = base * (2 ** attempt)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 0.005) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=base)
    await asyncio.sleep(delay)
