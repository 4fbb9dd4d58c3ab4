"""Cancellable timers keyed by alert id.

The queue holds no thread of its own: ``run_due(now)`` fires whatever is
due, so tests drive it with explicit timestamps and the service drives it
from a periodic task on wall-clock time.
"""

import heapq
import itertools
import threading


class TimerQueue:

    def __init__(self):
        self._heap: list = []
        self._live: dict[str, set[int]] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, key: str, due: float, callback) -> int:
        """Call ``callback(now)`` once ``run_due(now)`` reaches *due*."""
        with self._lock:
            token = next(self._seq)
            heapq.heappush(self._heap, (due, token, key, callback))
            self._live.setdefault(key, set()).add(token)
            return token

    def cancel(self, key: str) -> int:
        """Cancel every pending timer for *key*.  Returns how many were cancelled."""
        with self._lock:
            return len(self._live.pop(key, ()))

    def run_due(self, now: float) -> int:
        """Fire every live timer due at or before *now*, earliest first."""
        fired = 0
        while True:
            with self._lock:
                if not self._heap or self._heap[0][0] > now:
                    return fired
                _, token, key, callback = heapq.heappop(self._heap)
                tokens = self._live.get(key)
                if tokens is None or token not in tokens:
                    continue  # cancelled
                tokens.discard(token)
                if not tokens:
                    del self._live[key]
            # Callbacks may schedule or cancel, so run them unlocked.
            callback(now)
            fired += 1

    def pending(self, key: str | None = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._live.get(key, ()))
            return sum(len(t) for t in self._live.values())

    def next_due(self) -> float | None:
        with self._lock:
            for due, token, key, _ in sorted(self._heap):
                if token in self._live.get(key, ()):
                    return due
            return None
