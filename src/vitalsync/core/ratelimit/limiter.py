"""Per-source minimum-interval rate limiter.

Vendor quotas are enforced per API application, not per end user, so one
limiter instance is shared by every sync in the process. It is a cooperative
gate: a denied caller fails its sync for that source and the next scheduled
run tries again. Nothing here blocks or queues.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

# Minimum seconds between syncs per source, from each vendor's published quota.
DEFAULT_INTERVALS_S: dict[str, float] = {
    "samsung_health": 1.0,
    "fitbit": 3600.0,       # 150 requests/hour per user token, one sync ≈ 5 requests
    "oura": 300.0,
    "google_fit": 60.0,
}
FALLBACK_INTERVAL_S = 5.0


class RateLimiter:
    """One last-used timestamp per source compared against a fixed interval.

    Thread-safe. ``try_acquire`` is the atomic check-and-mark used by the
    sync orchestrator; ``allow``/``mark_used`` are the plain primitives.
    """

    def __init__(
        self,
        intervals: dict[str, float] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._intervals = {**DEFAULT_INTERVALS_S, **(intervals or {})}
        for source, interval in self._intervals.items():
            if interval < 0:
                raise ValueError(f"Rate limit interval for {source!r} must be >= 0")
        self._clock = clock
        self._last_used: dict[str, float] = {}
        self._lock = threading.Lock()

    def interval_for(self, source: str) -> float:
        return self._intervals.get(source, FALLBACK_INTERVAL_S)

    def allow(self, source: str) -> bool:
        """True if the minimum interval has elapsed since the last use."""
        with self._lock:
            return self._allowed_locked(source)

    def mark_used(self, source: str) -> None:
        with self._lock:
            self._last_used[source] = self._clock()

    def try_acquire(self, source: str) -> bool:
        """Check and mark in one step; False means the caller was denied."""
        with self._lock:
            if not self._allowed_locked(source):
                logger.info("Rate limit hit for %s", source)
                return False
            self._last_used[source] = self._clock()
            return True

    def retry_after(self, source: str) -> float:
        """Seconds until ``source`` is allowed again (0 when allowed now)."""
        with self._lock:
            last = self._last_used.get(source)
            if last is None:
                return 0.0
            return max(0.0, self.interval_for(source) - (self._clock() - last))

    def _allowed_locked(self, source: str) -> bool:
        last = self._last_used.get(source)
        if last is None:
            return True
        return (self._clock() - last) >= self.interval_for(source)
