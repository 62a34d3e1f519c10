"""
Session countdown timer.

The remaining time is always recomputed from the persisted `started_at`, so a
reload or a second subscriber gets the same value instead of a drifting
counter. `SessionTimer` adds the expiration contract on top: `on_expired`
fires exactly once per instance.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from config import Config

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_SECONDS = 300
URGENT_THRESHOLD_SECONDS = 60

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # Naive timestamps coming back from the store are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def remaining_seconds(
    started_at: datetime,
    duration_minutes: float = Config.SESSION_DURATION_MINUTES,
    now: Optional[datetime] = None,
) -> float:
    """
    Seconds left before the session deadline, never negative.

    Args:
        started_at: Authoritative session start time from the store
        duration_minutes: Session length
        now: Evaluation time, defaults to the current UTC time

    Returns:
        max(0, duration * 60 - (now - started_at)) in seconds
    """
    now = _as_aware(now or utc_now())
    elapsed = (now - _as_aware(started_at)).total_seconds()
    return max(0.0, duration_minutes * 60 - elapsed)


def format_time(seconds: float) -> str:
    """Format seconds as MM:SS"""
    safe_seconds = max(0, int(seconds))
    minutes, secs = divmod(safe_seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


def timer_style(seconds: float) -> str:
    """Advisory presentation tier: neutral, warning or urgent."""
    if seconds <= URGENT_THRESHOLD_SECONDS:
        return "urgent"
    if seconds <= WARNING_THRESHOLD_SECONDS:
        return "warning"
    return "neutral"


def timer_view(started_at: datetime, duration_minutes: float, now: Optional[datetime] = None) -> dict:
    remaining = remaining_seconds(started_at, duration_minutes, now)
    return {
        "remainingSeconds": int(remaining),
        "formattedTime": format_time(remaining),
        "timerStyle": timer_style(remaining),
        "isExpired": remaining <= 0,
    }


class SessionTimer:
    """Ticking countdown for one session with a latched expiration callback."""

    def __init__(
        self,
        started_at: datetime,
        on_expired: Callable[[], Any],
        duration_minutes: float = Config.SESSION_DURATION_MINUTES,
        clock: Clock = utc_now,
        tick_interval: float = 1.0,
    ):
        self.started_at = _as_aware(started_at)
        self.duration_minutes = duration_minutes
        self.tick_interval = tick_interval
        self._on_expired = on_expired
        self._clock = clock
        self._has_fired = False
        self._stopped = False
        self._expiry_task: Optional[Awaitable] = None
        self.remaining = remaining_seconds(self.started_at, duration_minutes, clock())

    @property
    def has_fired(self) -> bool:
        return self._has_fired

    @property
    def is_expired(self) -> bool:
        return self.remaining <= 0

    def tick(self, now: Optional[datetime] = None) -> float:
        """Re-evaluate the remaining time and fire `on_expired` the first time it hits zero."""
        self.remaining = remaining_seconds(self.started_at, self.duration_minutes, now or self._clock())
        if self.remaining <= 0 and not self._has_fired:
            self._has_fired = True
            outcome = self._on_expired()
            if inspect.isawaitable(outcome):
                self._expiry_task = asyncio.ensure_future(outcome)
        return self.remaining

    def view(self) -> dict:
        return {
            "remainingSeconds": int(self.remaining),
            "formattedTime": format_time(self.remaining),
            "timerStyle": timer_style(self.remaining),
            "isExpired": self.is_expired,
        }

    def stop(self):
        self._stopped = True

    async def run(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """Tick every `tick_interval` seconds until expiration or `stop()`."""
        try:
            # A reload after the deadline expires immediately
            self.tick()
            while not self._has_fired and not self._stopped:
                await sleep(self.tick_interval)
                if self._stopped:
                    break
                self.tick()
            if self._expiry_task is not None:
                await self._expiry_task
        except asyncio.CancelledError:
            logger.info("Session timer cancelled")
            raise
        finally:
            self._stopped = True
