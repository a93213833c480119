"""In-flight guard — at most one sync per (user, source) at a time."""

from __future__ import annotations

import threading
from collections.abc import Hashable


class InFlightGuard:
    """A lock-protected set of keys currently being synced.

    Collisions are reported, never waited on.
    """

    def __init__(self) -> None:
        self._active: set[Hashable] = set()
        self._lock = threading.Lock()

    def try_enter(self, key: Hashable) -> bool:
        """Claim ``key``; False if another sync already holds it."""
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def leave(self, key: Hashable) -> None:
        with self._lock:
            self._active.discard(key)

    def is_active(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
