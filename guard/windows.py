"""Time windows for per-key event accumulation.

Two shapes are used by the guard:

* ``FixedWindow``: an epoch-aligned counter, ``[start, start + size)``,
  that resets fully at the boundary.  Memory is O(1) per key; the rate
  limiter keeps one per (identifier, window size).
* ``SlidingWindow``: deque-based, O(1) append, amortized O(1) eviction.
  DDoS and abuse detection need the individual timestamps (peak rate,
  endpoint / user-agent diversity), so they keep a bounded log.

Neither calls ``time.time()``: the caller passes ``now`` (the request
timestamp), which keeps real-time evaluation and batch replay identical.
"""

from collections import deque


class FixedWindow:
    __slots__ = ("size", "start", "count")

    def __init__(self, size_seconds: int):
        self.size = size_seconds
        self.start = 0.0
        self.count = 0

    def _roll(self, now: float) -> None:
        start = (now // self.size) * self.size
        if start != self.start:
            # A request older than the current window can't rewind it.
            if start > self.start:
                self.start = start
                self.count = 0

    def current(self, now: float) -> int:
        self._roll(now)
        return self.count

    def add(self, now: float, n: int = 1) -> int:
        self._roll(now)
        self.count += n
        return self.count


def resets_in(size: float, now: float) -> float:
    """Seconds until the fixed window of *size* containing *now* ends."""
    start = (now // size) * size
    return round(start + size - now, 3)


class SlidingWindow:
    __slots__ = ("max_age", "_buf", "_newest")

    def __init__(self, max_age_seconds: float, maxlen: int | None = None):
        self.max_age = max_age_seconds
        self._buf: deque = deque(maxlen=maxlen)
        self._newest = 0.0

    def add(self, timestamp: float, item=None) -> bool:
        """Append item. Returns False (and drops) if it is already outside the window."""
        if timestamp < self._newest - self.max_age:
            return False  # already outside the window
        self._newest = max(self._newest, timestamp)
        self._evict(self._newest)
        self._buf.append((timestamp, item))
        return True

    def items(self, now: float, max_age: float | None = None) -> list:
        """Return all items inside the window ending at *now* (optionally narrower)."""
        self._evict(now)
        age = self.max_age if max_age is None else min(max_age, self.max_age)
        cutoff = now - age
        return [item for ts, item in self._buf if cutoff <= ts <= now]

    def count(self, now: float, max_age: float | None = None) -> int:
        self._evict(now)
        age = self.max_age if max_age is None else min(max_age, self.max_age)
        cutoff = now - age
        return sum(1 for ts, _ in self._buf if cutoff <= ts <= now)

    def clear(self) -> None:
        self._buf.clear()

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0][0] < cutoff:
            self._buf.popleft()

    def __len__(self) -> int:
        return len(self._buf)
