# eko/scheduling.py
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from eko.logging_config import get_logger
from eko.models import utcnow

logger = get_logger("scheduler")

NextFire = Callable[[datetime], datetime]


def compute_next_fire_time(now: datetime, fixed_hours: Iterable[int], tz: str) -> datetime:
    """Earliest instant strictly after `now` that falls on HH:00 local time in `tz`.

    The result is timezone-aware (in `tz`). Hours are wall-clock hours, so the
    schedule follows DST changes.
    """
    hours = sorted({int(h) for h in fixed_hours})
    if not hours or any(h < 0 or h > 23 for h in hours):
        raise ValueError(f"fixed_hours must be within 0-23, got {hours}")
    zone = ZoneInfo(tz)
    local_now = now.astimezone(zone)
    day = local_now.date()
    # Two extra days covers every hour set plus a DST shift
    for offset in range(3):
        d = day + timedelta(days=offset)
        for h in hours:
            candidate = datetime(d.year, d.month, d.day, h, tzinfo=zone)
            if candidate > local_now:
                return candidate
    raise RuntimeError("no fire time found")  # unreachable with a valid hour set


def fixed_hours(hours: Iterable[int], tz: str) -> NextFire:
    hours = tuple(hours)
    return lambda now: compute_next_fire_time(now, hours, tz)


def every(interval: timedelta) -> NextFire:
    if interval.total_seconds() <= 0:
        raise ValueError("interval must be positive")
    return lambda now: now + interval


class PeriodicJob:
    """Daemon thread running `func` at the instants given by `next_fire`.

    A failing run is logged and never ends the loop. `stop()` wakes the
    thread immediately.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], object],
        next_fire: NextFire,
        clock: Callable[[], datetime] = utcnow,
        on_start: Optional[Callable[[], object]] = None,
    ):
        self.name = name
        self.func = func
        self.next_fire = next_fire
        self.clock = clock
        self.on_start = on_start
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.next_run_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_forever, name=f"eko-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(f"Started job '{self.name}'")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info(f"Stopped job '{self.name}'")

    def run_once(self) -> bool:
        """Run the job body once, swallowing (and logging) any failure."""
        self.last_run_at = self.clock()
        try:
            self.func()
            return True
        except Exception as e:
            self.failures += 1
            logger.exception(f"Job '{self.name}' failed: {e}")
            return False

    def _run_forever(self) -> None:
        if self.on_start is not None:
            try:
                self.on_start()
            except Exception as e:
                self.failures += 1
                logger.exception(f"Startup hook of job '{self.name}' failed: {e}")
        while not self._stop_event.is_set():
            now = self.clock()
            self.next_run_at = self.next_fire(now)
            delay = max(0.0, (self.next_run_at - now).total_seconds())
            logger.debug(f"Job '{self.name}' next run at {self.next_run_at.isoformat()}")
            if self._stop_event.wait(delay):
                return
            self.run_once()
