"""Invocation modes for the decision engine.

``RealTimeRunner`` evaluates requests as they arrive, one pool task per
request.  ``replay`` feeds a recorded batch through the same
``DecisionEngine.evaluate`` in timestamp order.  Because every component
takes ``now`` from the record, a replay of the traffic a real-time run
saw reproduces its decisions.

``PeriodicTask`` drives the housekeeping (expiry sweep, alert timers) on
wall-clock time in the long-running service.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

from guard.models import Decision, InvocationMode, RequestRecord

logger = logging.getLogger(__name__)


class RealTimeRunner:

    def __init__(self, engine, max_workers: int = 8):
        self.engine = engine
        self._pool = ThreadPoolExecutor(max_workers=max_workers,
                                        thread_name_prefix="guard")

    def submit(self, request) -> Future:
        return self._pool.submit(self.engine.evaluate, request, InvocationMode.REAL_TIME)

    def evaluate(self, request) -> Decision:
        """Synchronous call on the caller's thread."""
        return self.engine.evaluate(request, InvocationMode.REAL_TIME)

    def run(self, requests) -> list[Decision]:
        """Submit every request; return decisions in input order."""
        futures = [self.submit(r) for r in requests]
        return [f.result() for f in futures]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _timestamp(request) -> float:
    if isinstance(request, RequestRecord):
        return request.timestamp
    try:
        return float(request.get("timestamp") or 0.0)
    except (TypeError, ValueError, AttributeError):
        return 0.0


def replay(engine, requests, sweep: bool = True, tick=None) -> list[Decision]:
    """Evaluate a recorded batch in timestamp order.

    The sort is stable, so records sharing a timestamp keep their input
    order.  With *sweep*, expired blocks are swept whenever record time
    crosses a sweep interval, as the periodic task would have done;
    *tick* (the alert pipeline's, say) is called at the same points.
    """
    ordered = sorted(requests, key=_timestamp)
    interval = engine.settings.sweep_interval_seconds
    decisions = []
    next_sweep = None
    for request in ordered:
        now = _timestamp(request)
        if sweep:
            if next_sweep is None:
                next_sweep = now + interval
            elif now >= next_sweep:
                engine.sweep(now)
                if tick is not None:
                    tick(now)
                next_sweep = now + interval
        decisions.append(engine.evaluate(request, InvocationMode.BATCH_REPLAY))
    logger.info("Replayed %d records", len(decisions))
    return decisions


class PeriodicTask:
    """Call ``fn(now)`` every *interval* seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, fn, clock=time.time):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> "PeriodicTask":
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def run_once(self) -> None:
        try:
            self.fn(self.clock())
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
