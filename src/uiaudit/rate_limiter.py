# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pool-wide minimum-interval limiter for outbound fetches.

One instance is shared by every worker of a job, so the interval bounds
the whole pool's start rate (one task start per ``interval``), not each
worker's.

- **Clock** — ``time.monotonic()``.
- **Fairness** — waiters are serialized on an ``asyncio.Lock`` (FIFO).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IntervalHealth:
    """Immutable snapshot of limiter state for status queries."""

    interval: float
    total_acquired: int
    total_waited: float  # seconds spent sleeping across all acquires


class IntervalRateLimiter:
    """At most one task start per ``interval`` seconds across all callers.

    Usage::

        limiter = IntervalRateLimiter(1.0)
        async with asyncio.TaskGroup() as tg:
            for url in urls:
                tg.create_task(worker(url, limiter))

        async def worker(url, limiter):
            await limiter.acquire()
            ...
    """

    def __init__(self, interval: float) -> None:
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        self._interval = interval
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self._total_acquired = 0
        self._total_waited = 0.0

    @property
    def interval(self) -> float:
        return self._interval

    async def acquire(self) -> float:
        """Wait for the next start slot. Returns seconds slept."""
        async with self._lock:
            now = time.monotonic()
            delay = max(0.0, self._next_slot - now)
            if delay > 0:
                await asyncio.sleep(delay)
            self._next_slot = max(now, self._next_slot) + self._interval
            self._total_acquired += 1
            self._total_waited += delay
        return delay

    def health(self) -> IntervalHealth:
        return IntervalHealth(
            interval=self._interval,
            total_acquired=self._total_acquired,
            total_waited=self._total_waited,
        )
