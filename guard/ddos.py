"""DDoS guard: short-window attack detection with automatic blocking.

Three signals, checked on every observed request:

* peak:       requests in the current epoch-aligned second > requests_per_second
* sustained:  requests in the detection window > requests_per_second x window
* concurrent: total open connections > global threshold; the top offenders
              by open connections are treated as attack sources

An attack source is blocked through the IP registry for a fixed duration
(``ddos_block_minutes``).  That category is independent of the progressive
violation ladder: floods end quickly and the block should too.

Geographic filtering is optional and needs an injected ``ip -> region``
resolver; requests from denied regions are refused regardless of rate.
"""

import heapq
import logging
import threading
from collections import Counter
from dataclasses import dataclass

from guard.models import EventType, SecurityEvent
from guard.store import KeyedLocks
from guard.windows import SlidingWindow

logger = logging.getLogger(__name__)

_PEAK_WINDOW_SECONDS = 1.0


@dataclass
class DDoSResult:
    attack: bool
    reason: str = ""
    request_count: int = 0
    region: str | None = None
    geo_denied: bool = False
    event: SecurityEvent | None = None
    block_event: SecurityEvent | None = None


class DDoSGuard:

    def __init__(self, settings, registry, sink, region_resolver=None):
        self.settings = settings
        self.registry = registry
        self.sink = sink
        self.region_resolver = region_resolver
        self._locks = KeyedLocks()
        self._windows: dict[str, SlidingWindow] = {}
        self._create = threading.Lock()
        self._connections: Counter = Counter()
        self._conn_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection tracking
    # ------------------------------------------------------------------

    def connection_opened(self, ip: str) -> int:
        with self._conn_lock:
            self._connections[ip] += 1
            return self._connections[ip]

    def connection_closed(self, ip: str) -> int:
        with self._conn_lock:
            if self._connections[ip] <= 1:
                self._connections.pop(ip, None)
                return 0
            self._connections[ip] -= 1
            return self._connections[ip]

    def concurrent_connections(self, ip: str | None = None) -> int:
        """Open connections for *ip*, or across all IPs when ip is None."""
        with self._conn_lock:
            if ip is None:
                return sum(self._connections.values())
            return self._connections.get(ip, 0)

    def top_offenders(self, n: int | None = None) -> list[str]:
        n = n or self.settings.ddos_top_offenders
        with self._conn_lock:
            return [ip for ip, _ in heapq.nlargest(n, self._connections.items(),
                                                   key=lambda kv: (kv[1], kv[0]))]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _window(self, ip: str) -> SlidingWindow:
        w = self._windows.get(ip)
        if w is None:
            with self._create:
                w = self._windows.setdefault(
                    ip, SlidingWindow(max(self.settings.ddos_window_seconds, _PEAK_WINDOW_SECONDS)))
        return w

    def region_denied(self, ip: str) -> tuple[bool, str | None]:
        s = self.settings
        if not s.geo_filtering_enabled or self.region_resolver is None:
            return False, None
        try:
            region = self.region_resolver(ip)
        except Exception as e:
            logger.debug("Region lookup failed for %s: %s", ip, e)
            region = None
        if not region:
            return False, None  # unknown region: allow
        region = region.strip().upper()
        if region in s.geo_blocked_regions:
            return True, region
        if s.geo_allowed_regions and region not in s.geo_allowed_regions:
            return True, region
        return False, region

    def observe(self, ip: str, now: float) -> DDoSResult:
        """Record one request from *ip* and decide whether it is an attack source."""
        s = self.settings
        denied, region = self.region_denied(ip)
        if denied:
            logger.info("IP %s from denied region %s", ip, region)
            event = self._emit(ip, now, 0, "geo_denied", {"region": region})
            return DDoSResult(attack=False, reason="geo_denied", region=region,
                              geo_denied=True, event=event)

        with self._locks.hold(ip):
            window = self._window(ip)
            window.add(now)
            peak = window.count(now, now % _PEAK_WINDOW_SECONDS)
            sustained = window.count(now, s.ddos_window_seconds)

        reason = ""
        if peak > s.ddos_requests_per_second:
            reason = "peak_rate"
        elif sustained > s.ddos_requests_per_second * s.ddos_window_seconds:
            reason = "sustained_rate"
        else:
            total = self.concurrent_connections()
            if total > s.ddos_concurrent_connections and ip in self.top_offenders():
                reason = "concurrent_connections"

        if not reason:
            return DDoSResult(attack=False, request_count=sustained, region=region)

        logger.warning("DDoS attack detected from %s (%s): %d req in %ds, peak %d/s",
                       ip, reason, sustained, s.ddos_window_seconds, peak)
        event = self._emit(ip, now, sustained, reason, {
            "peak_requests_per_second": peak,
            "threshold_requests_per_second": s.ddos_requests_per_second,
            "window_seconds": s.ddos_window_seconds,
            "concurrent_connections": self.concurrent_connections(),
        })
        block_event = self.registry.block_for(
            ip, s.ddos_block_minutes,
            f"DDoS attack detected ({s.ddos_requests_per_second} req/s threshold, {reason})",
            now, category="ddos")
        # Simple dedup: once blocked the source must re-accumulate to fire again.
        self.reset(ip)
        return DDoSResult(attack=True, reason=reason, request_count=sustained,
                          region=region, event=event, block_event=block_event)

    def reset(self, ip: str) -> None:
        with self._locks.hold(ip):
            w = self._windows.get(ip)
            if w is not None:
                w.clear()

    def purge_idle(self, now: float) -> int:
        """Forget IPs with no request inside the detection window."""
        with self._create:
            candidates = list(self._windows)
        purged = 0
        for ip in candidates:
            with self._locks.hold(ip), self._create:
                w = self._windows.get(ip)
                if w is not None and w.count(now) == 0:
                    del self._windows[ip]
                    purged += 1
        return purged

    def _emit(self, ip, now, count, reason, extra):
        event = SecurityEvent(
            event_type=EventType.DDOS,
            ip=ip,
            timestamp=now,
            request_count=count,
            metadata={"reason": reason, **extra},
        )
        self.sink.record_event(event)
        self.sink.record_metric("security", "ddos_detections", 1, "count",
                                {"ip": ip, "reason": reason})
        return event
