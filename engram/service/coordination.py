"""Bounded poll-wait used when a caller arrives while setup is already running."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable


async def wait_until(
    predicate: Callable[[], bool],
    interval: float = 0.5,
    timeout: float = 120.0,
) -> bool:
    """Poll *predicate* every *interval* seconds until it holds or *timeout* passes.

    Returns:
        True if the predicate became true, False on timeout.
    """
    deadline = time.monotonic() + timeout
    while not predicate():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
    return True
