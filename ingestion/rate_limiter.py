"""
Async rate limiter shared by every caller of the upstream catalog API.

Two limits are enforced on each acquisition:
- a minimum spacing between any two acquisitions (burst protection)
- a ceiling on acquisitions within a rolling window (hourly quota)

The limiter never raises when a limit is reached; it suspends the caller.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rate limiter that sleeps if the rate limit is hit

    The limiter keeps the acquisition times of the current window. When the
    window ceiling is reached the caller sleeps until the oldest acquisition
    falls out of the window. The minimum interval is enforced first so
    acquisitions are never bursty.

    Acquisitions are serialized with an asyncio.Lock, so concurrent callers
    queue up in arrival order.
    """

    def __init__(
        self,
        name: str,
        min_interval: float = 0.55,
        max_per_window: int = 7000,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_window_exhausted: Optional[Callable[[int, float], Awaitable[None]]] = None,
    ) -> None:
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        self.name = name
        self.min_interval = min_interval
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._on_window_exhausted = on_window_exhausted

        self._lock = asyncio.Lock()
        self._request_times: deque = deque()
        self._last_request_time: Optional[float] = None
        self._total = 0

    def _evict(self, now: float) -> None:
        while self._request_times and now - self._request_times[0] >= self.window_seconds:
            self._request_times.popleft()

    async def acquire(self) -> None:
        """Wait until one unit of upstream work may be issued, then record it"""
        async with self._lock:
            now = self._clock()

            if self._last_request_time is not None:
                elapsed = now - self._last_request_time
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
                    now = self._clock()

            self._evict(now)
            if len(self._request_times) >= self.max_per_window:
                wait = self.window_seconds - (now - self._request_times[0])
                if wait > 0:
                    logger.warning(
                        f"{self.name}: window ceiling of {self.max_per_window} reached, "
                        f"sleeping for {wait:.1f} seconds"
                    )
                    if self._on_window_exhausted is not None:
                        try:
                            await self._on_window_exhausted(len(self._request_times), wait)
                        except Exception as e:
                            logger.error(f"{self.name}: failed to record window exhaustion: {e}")
                    await self._sleep(wait)
                    now = self._clock()
                self._evict(now)

            self._request_times.append(now)
            self._last_request_time = now
            self._total += 1

    def stats(self) -> Dict[str, Any]:
        """Snapshot of limiter state for diagnostics"""
        now = self._clock()
        self._evict(now)
        window_age = now - self._request_times[0] if self._request_times else 0.0
        return {
            "name": self.name,
            "requests_in_window": len(self._request_times),
            "max_per_window": self.max_per_window,
            "window_seconds": self.window_seconds,
            "window_age_seconds": round(window_age, 3),
            "seconds_since_last_request": (
                round(now - self._last_request_time, 3)
                if self._last_request_time is not None else None
            ),
            "total_requests": self._total,
        }
