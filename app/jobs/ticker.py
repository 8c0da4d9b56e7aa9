"""
Periodic tickers and run guards for the trigger scheduler.

A Ticker owns one background task that calls an async callback on a
schedule. The scheduler only depends on start()/stop(), so tests can drive
ticks by hand with ManualTicker.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[datetime], Awaitable[object]]

ERROR_BACKOFF_SECONDS = 60


class GuardState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class RunGuard:
    """
    Prevents overlapping runs of one cadence.

    try_acquire() is an atomic test-and-set: it moves Idle -> Running and
    returns True, or returns False when a run is already in progress. Callers
    that acquire must release in a finally block.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = GuardState.IDLE
        self.acquired_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state is GuardState.RUNNING

    async def try_acquire(self) -> bool:
        async with self._lock:
            if self.state is GuardState.RUNNING:
                return False
            self.state = GuardState.RUNNING
            self.acquired_at = datetime.now(UTC)
            return True

    async def release(self) -> None:
        async with self._lock:
            self.state = GuardState.IDLE
            self.acquired_at = None


def seconds_until_daily(now: datetime, hour_minute: str, tz: ZoneInfo) -> float:
    """
    Seconds from `now` until the next HH:MM in `tz`.

    When `now` is exactly on the target minute the next occurrence is
    tomorrow's.
    """
    hours, minutes = (int(part) for part in hour_minute.split(":"))
    local_now = now.astimezone(tz)
    target = local_now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if target <= local_now:
        target = (target + timedelta(days=1)).replace(hour=hours, minute=minutes)
    return max((target - local_now).total_seconds(), 0.0)


def seconds_until_next_minute(now: datetime, interval_seconds: int = 60) -> float:
    """Align fine ticks to the start of a minute so HH:MM matching is stable."""
    if interval_seconds % 60:
        return float(interval_seconds)
    elapsed = now.second + now.microsecond / 1_000_000
    remaining = 60 - elapsed
    return remaining + (interval_seconds - 60)


class Ticker:
    """Base ticker: subclasses decide how long to wait before each tick."""

    def __init__(
        self,
        name: str,
        callback: TickCallback,
        clock: Callable[[], datetime] | None = None,
    ):
        self.name = name
        self.callback = callback
        self.clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self, now: datetime) -> float:
        raise NotImplementedError

    def start(self) -> None:
        if self.running:
            logger.warning("Ticker already started", ticker=self.name)
            return
        self._task = asyncio.create_task(self._loop(), name=f"ticker-{self.name}")
        logger.info("Ticker started", ticker=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Ticker stopped", ticker=self.name)

    async def _loop(self) -> None:
        while True:
            delay = self.next_delay(self.clock())
            await asyncio.sleep(delay)
            try:
                await self.callback(self.clock())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error in ticker callback",
                    ticker=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                # Wait a bit before the next tick to avoid tight error loops
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)


class IntervalTicker(Ticker):
    """Ticks every `interval_seconds`, aligned to minute boundaries."""

    def __init__(self, name: str, callback: TickCallback, interval_seconds: int = 60, clock=None):
        super().__init__(name, callback, clock)
        self.interval_seconds = interval_seconds

    def next_delay(self, now: datetime) -> float:
        return seconds_until_next_minute(now, self.interval_seconds)


class DailyTicker(Ticker):
    """Ticks once a day at `hour_minute` in `timezone`."""

    def __init__(self, name: str, callback: TickCallback, hour_minute: str, timezone: str, clock=None):
        super().__init__(name, callback, clock)
        self.hour_minute = hour_minute
        self.tz = ZoneInfo(timezone)

    def next_delay(self, now: datetime) -> float:
        return seconds_until_daily(now, self.hour_minute, self.tz)


class ManualTicker(Ticker):
    """Never ticks by itself; fire() runs the callback immediately."""

    def __init__(self, name: str, callback: TickCallback, clock=None):
        super().__init__(name, callback, clock)
        self.started = False

    @property
    def running(self) -> bool:
        return self.started

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def fire(self, now: datetime | None = None):
        return await self.callback(now or self.clock())
