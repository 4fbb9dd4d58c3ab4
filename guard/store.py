"""Injected state stores for counters and IP records.

Detection logic never touches a global table: it talks to a
``CounterStore`` and an ``IPStore``.  The in-memory implementations below
are what tests and single-process deployments use; a distributed cache can
implement the same methods (Redis ``MULTI``/Lua for the atomic
check-then-increment) without touching the detectors.

Locking is striped per key so unrelated identifiers never wait on one
global lock.
"""

import threading
import zlib
from contextlib import ExitStack, contextmanager

from guard.windows import FixedWindow


class KeyedLocks:
    """A fixed pool of locks; each key hashes to one stripe."""

    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @contextmanager
    def hold(self, *keys: str):
        """Acquire the stripes for all *keys*, in index order (deadlock-free)."""
        indexes = sorted({self._index(k) for k in keys})
        with ExitStack() as stack:
            for i in indexes:
                stack.enter_context(self._locks[i])
            yield


class CounterStore:
    """Fixed-window counters keyed by (identifier key, window size)."""

    def check_and_increment(self, limits: list, now: float):
        """Atomically check every (key, size, limit) and count the request only if all pass.

        Returns ``(None, remaining)`` when accepted, where remaining is the
        smallest headroom left across all limits, or ``(violated, 0)`` with
        the first violated ``(key, size, limit, current)`` tuple.
        """
        raise NotImplementedError

    def current(self, key: str, size: int, now: float) -> int:
        raise NotImplementedError


class IPStore:
    """Persistence for ``IPRecord`` objects, one per IP."""

    def get(self, ip: str):
        raise NotImplementedError

    def put(self, record) -> None:
        raise NotImplementedError

    def delete(self, ip: str) -> None:
        raise NotImplementedError

    def all(self) -> list:
        raise NotImplementedError

    def lock(self, ip: str):
        """Context manager serializing writers for one IP."""
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):

    def __init__(self, stripes: int = 64):
        self._locks = KeyedLocks(stripes)
        self._windows: dict[tuple[str, int], FixedWindow] = {}
        self._create = threading.Lock()

    def _window(self, key: str, size: int) -> FixedWindow:
        w = self._windows.get((key, size))
        if w is None:
            with self._create:
                w = self._windows.setdefault((key, size), FixedWindow(size))
        return w

    def check_and_increment(self, limits, now):
        keys = [key for key, _, _ in limits]
        with self._locks.hold(*keys):
            windows = [(self._window(key, size), key, size, limit)
                       for key, size, limit in limits]
            remaining = None
            for w, key, size, limit in windows:
                current = w.current(now)
                if current >= limit:
                    return (key, size, limit, current), 0
                headroom = limit - current - 1
                remaining = headroom if remaining is None else min(remaining, headroom)
            for w, _, _, _ in windows:
                w.add(now)
            return None, remaining if remaining is not None else 0

    def current(self, key, size, now):
        with self._locks.hold(key):
            w = self._windows.get((key, size))
            return w.current(now) if w else 0

    def purge_idle(self, now: float) -> int:
        """Drop windows whose period ended; bounds memory for one-off identifiers."""
        with self._create:
            stale = [k for k, w in self._windows.items() if w.start + w.size <= now]
        purged = 0
        for key, size in stale:
            with self._locks.hold(key), self._create:
                w = self._windows.get((key, size))
                if w is not None and w.start + w.size <= now:
                    del self._windows[(key, size)]
                    purged += 1
        return purged


class InMemoryIPStore(IPStore):

    def __init__(self, stripes: int = 64):
        self._locks = KeyedLocks(stripes)
        self._records: dict = {}

    def get(self, ip):
        return self._records.get(ip)

    def put(self, record):
        self._records[record.ip] = record

    def delete(self, ip):
        self._records.pop(ip, None)

    def all(self):
        return list(self._records.values())

    def lock(self, ip):
        return self._locks.hold(ip)
