"""Clock used for deadlines, backoff and lease heartbeats."""

import threading
from datetime import datetime, timedelta, timezone


class Clock:
    """Source of the current time (naive UTC datetimes, matching stored columns)."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class ManualClock(Clock):
    """Clock that only moves when told to. Used by tests to drive timeouts and leases."""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2024, 1, 1, 0, 0, 0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now
