"""Delayed, de-duplicating work queue keyed by cluster identity.

A key is held at most once.  Adding a key that is already queued keeps
whichever due time is earlier, so a burst of notifications for the same
cluster collapses into a single pass.  A key handed out by ``pop_due`` is
no longer queued; it only comes back when the caller re-adds it.

Failure backoff is exponential per key, starting at ``base_delay`` and
capped at ``max_delay``; ``forget`` resets it.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from cluster_registrar.models import ClusterKey


class RequeueQueue:
    """Thread-safe delayed work queue with per-key failure backoff."""

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = _clock or time.monotonic
        self._lock = threading.Lock()
        self._due: dict[ClusterKey, float] = {}
        self._failures: dict[ClusterKey, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._due)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._due

    def add(self, key: ClusterKey) -> None:
        """Queue ``key`` for immediate processing."""
        self.add_after(key, 0.0)

    def add_after(self, key: ClusterKey, delay: float) -> None:
        due = self._clock() + max(delay, 0.0)
        with self._lock:
            current = self._due.get(key)
            if current is None or due < current:
                self._due[key] = due

    def add_rate_limited(self, key: ClusterKey) -> float:
        """Queue ``key`` after its backoff delay; returns the delay used."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._base_delay * (2 ** failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: ClusterKey) -> None:
        """Reset the failure backoff for ``key``."""
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: ClusterKey) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def pop_due(self) -> list[ClusterKey]:
        """Remove and return every key whose due time has passed, oldest first."""
        now = self._clock()
        with self._lock:
            ready = sorted(
                (due, str(key), key) for key, due in self._due.items() if due <= now
            )
            for _, _, key in ready:
                del self._due[key]
        return [key for _, _, key in ready]

    def next_due_in(self) -> float | None:
        """Seconds until the next key is due (0 if overdue), None if empty."""
        with self._lock:
            if not self._due:
                return None
            earliest = min(self._due.values())
        return max(earliest - self._clock(), 0.0)
