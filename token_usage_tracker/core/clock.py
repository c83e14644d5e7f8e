"""
Reference clock and time-bucket keys.

All aggregation happens in one fixed timezone, optionally corrected by an
offset measured against an external time service.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
TIME_SYNC_URL = "https://worldtimeapi.org/api/timezone/{timezone}"
TIME_SYNC_INTERVAL_SECONDS = 5 * 60


def day_key(moment: datetime, tz: ZoneInfo) -> str:
    """Return ``YYYY-MM-DD`` for *moment* in *tz*."""
    return moment.astimezone(tz).strftime("%Y-%m-%d")


def hour_key(moment: datetime, tz: ZoneInfo) -> str:
    """Return ``YYYY-MM-DDTHH`` for *moment* in *tz*."""
    return moment.astimezone(tz).strftime("%Y-%m-%dT%H")


def week_key(moment: datetime, tz: ZoneInfo) -> str:
    """Return the ISO-8601 week key ``YYYY-Www`` for *moment* in *tz*.

    Uses the ISO year, so late-December dates can belong to week 1 of the
    following year (2024-12-31 is ``2025-W01``).
    """
    iso_year, iso_week, _ = moment.astimezone(tz).isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_key(moment: datetime, tz: ZoneInfo) -> str:
    """Return ``YYYY-MM`` for *moment* in *tz*."""
    return moment.astimezone(tz).strftime("%Y-%m")


class TimeSource:
    """Current time in the reference timezone, corrected by an external clock.

    ``now()`` never blocks: when the last sync is stale and an event loop is
    running, a resync task is spawned and the current offset is used until it
    finishes.
    """

    def __init__(
        self,
        timezone: str = DEFAULT_TIMEZONE,
        sync_url: Optional[str] = None,
        sync_interval: float = TIME_SYNC_INTERVAL_SECONDS,
        sync_enabled: bool = True,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.tz = ZoneInfo(timezone)
        self.sync_url = sync_url or TIME_SYNC_URL.format(timezone=timezone)
        self.sync_interval = sync_interval
        self.sync_enabled = sync_enabled
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=10.0))
        self._wall_clock = wall_clock
        self.offset_seconds: Optional[float] = None
        self.last_sync_at: Optional[float] = None
        self._sync_task: Optional[asyncio.Task] = None

    def now(self) -> datetime:
        """Return the corrected current time as an aware datetime in the reference zone."""
        self._maybe_schedule_sync()
        timestamp = self._wall_clock()
        if self.offset_seconds is not None:
            timestamp += self.offset_seconds
        return datetime.fromtimestamp(timestamp, self.tz)

    def day_key(self, moment: Optional[datetime] = None) -> str:
        return day_key(moment or self.now(), self.tz)

    def hour_key(self, moment: Optional[datetime] = None) -> str:
        return hour_key(moment or self.now(), self.tz)

    def week_key(self, moment: Optional[datetime] = None) -> str:
        return week_key(moment or self.now(), self.tz)

    def month_key(self, moment: Optional[datetime] = None) -> str:
        return month_key(moment or self.now(), self.tz)

    async def sync(self) -> bool:
        """Measure the offset against the external time service.

        Returns:
            True if the offset was updated; False on any failure, in which
            case the previous offset is kept
        """
        try:
            async with self._client_factory() as client:
                response = await client.get(self.sync_url)
                response.raise_for_status()
                data = response.json()
            external = self._parse_external_time(data)
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.warning("Failed to fetch external time: %s", e)
            return False

        local = self._wall_clock()
        self.offset_seconds = external - local
        self.last_sync_at = local
        logger.info("Time synced with external source, offset %.3fs", self.offset_seconds)
        return True

    async def wait_for_sync(self) -> None:
        """Join an in-flight background resync, if any."""
        if self._sync_task is not None:
            await asyncio.gather(self._sync_task, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel an in-flight background resync."""
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
            await asyncio.gather(self._sync_task, return_exceptions=True)
        self._sync_task = None

    def _maybe_schedule_sync(self) -> None:
        if not self.sync_enabled:
            return
        if self._sync_task is not None and not self._sync_task.done():
            return
        if self.last_sync_at is not None and self._wall_clock() - self.last_sync_at <= self.sync_interval:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sync_task = loop.create_task(self._background_sync())

    async def _background_sync(self) -> None:
        if not await self.sync():
            # A failed sync waits a full interval before the next attempt.
            self.last_sync_at = self._wall_clock()

    @staticmethod
    def _parse_external_time(data) -> float:
        if not isinstance(data, dict):
            raise ValueError("Unexpected response from external time source")
        unixtime = data.get("unixtime")
        if isinstance(unixtime, (int, float)) and not isinstance(unixtime, bool):
            return float(unixtime)
        raw = data.get("datetime")
        if not isinstance(raw, str):
            raise ValueError("Invalid datetime from external time source")
        return datetime.fromisoformat(raw).timestamp()
