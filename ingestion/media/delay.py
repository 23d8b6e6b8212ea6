"""
Runtime media download delay, read from the settings table with bounded staleness
"""

import logging
import time
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from models import Setting, MEDIA_DOWNLOAD_DELAY_KEY

logger = logging.getLogger(__name__)


def clamp_delay(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


class DelaySetting:
    """
    Cached reader for ``media_download_delay_ms``.

    The row is re-read at most once per poll interval. Missing or unparseable
    values fall back to the configured default; every value is clamped to
    [minimum, maximum]. A failed read keeps the last known value.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        default_ms: Optional[int] = None,
        minimum_ms: Optional[int] = None,
        maximum_ms: Optional[int] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_maker = session_maker
        self.minimum_ms = minimum_ms or settings.MEDIA_DELAY_MIN_MS
        self.maximum_ms = maximum_ms or settings.MEDIA_DELAY_MAX_MS
        self.default_ms = clamp_delay(
            default_ms or settings.MEDIA_DOWNLOAD_DELAY_MS, self.minimum_ms, self.maximum_ms
        )
        self.poll_interval = poll_interval if poll_interval is not None else settings.SETTING_POLL_INTERVAL_SECONDS
        self._clock = clock

        self._value_ms = self.default_ms
        self._last_poll: Optional[float] = None

    @property
    def cached_ms(self) -> int:
        return self._value_ms

    async def get_ms(self) -> int:
        now = self._clock()
        if self._last_poll is not None and now - self._last_poll < self.poll_interval:
            return self._value_ms

        self._last_poll = now
        try:
            async with self.session_maker() as session:
                row = await session.get(Setting, MEDIA_DOWNLOAD_DELAY_KEY)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read {MEDIA_DOWNLOAD_DELAY_KEY}, keeping {self._value_ms}ms: {e}")
            return self._value_ms

        value = self.default_ms
        if row is not None:
            try:
                value = clamp_delay(int(row.value), self.minimum_ms, self.maximum_ms)
            except (TypeError, ValueError):
                logger.warning(f"Invalid {MEDIA_DOWNLOAD_DELAY_KEY} value {row.value!r}, using default")

        if value != self._value_ms:
            logger.info(f"Media download delay changed: {self._value_ms}ms -> {value}ms")
        self._value_ms = value
        return value

    async def get_seconds(self) -> float:
        return await self.get_ms() / 1000.0
