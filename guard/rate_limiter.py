"""Multi-window rate limiter with burst allowance.

Fixed epoch-aligned windows (minute / hour / day) plus a short burst
window, per IP; a per-API-key and a per-(IP, endpoint) window on top.
Each window resets fully at its boundary; this approximates a true
sliding log that keeps memory at O(identifiers x windows).

All windows of one request are checked and incremented in a single
critical section, so a burst can't slip through between check and count,
and a denied request never inflates any counter.
"""

import logging
from dataclasses import dataclass

from guard.models import EventType, Identifier, IdentifierKind, SecurityEvent
from guard.windows import resets_in

logger = logging.getLogger(__name__)


@dataclass
class RateResult:
    allowed: bool
    remaining: int | None = None
    retry_after: float | None = None
    window: str | None = None
    identifier: str | None = None
    limit: int | None = None
    event: SecurityEvent | None = None


class RateLimiter:

    def __init__(self, settings, counters, registry, sink):
        self.settings = settings
        self.counters = counters
        self.registry = registry
        self.sink = sink

    def _limits(self, ip, endpoint, api_key):
        """Yield (identifier, window_name, key, size, limit) for one request."""
        s = self.settings
        ip_id = Identifier.for_ip(ip)
        yield ip_id, "minute", ip_id.key, 60, s.rate_limit_per_minute
        yield ip_id, "hour", ip_id.key, 3600, s.rate_limit_per_hour
        yield ip_id, "day", ip_id.key, 86400, s.rate_limit_per_day
        yield ip_id, "burst", ip_id.key + "#burst", s.burst_window_seconds, s.burst_size
        if api_key:
            key_id = Identifier.for_api_key(api_key)
            yield key_id, "minute", key_id.key, 60, s.api_key_rate_limit_per_minute
        if endpoint:
            ep_id = Identifier.for_endpoint(ip, endpoint)
            yield ep_id, "minute", ep_id.key, 60, s.endpoint_rate_limit_per_minute

    def check(self, ip: str, endpoint: str | None = None, api_key: str | None = None,
              now: float = 0.0) -> RateResult:
        """Count one request; report whether every applicable limit still holds."""
        if self.registry.is_whitelisted(ip):
            return RateResult(allowed=True)

        windows = list(self._limits(ip, endpoint, api_key))
        by_key = {(key, size): (ident, name) for ident, name, key, size, _ in windows}
        violated, remaining = self.counters.check_and_increment(
            [(key, size, limit) for _, _, key, size, limit in windows], now)

        if violated is None:
            return RateResult(allowed=True, remaining=remaining)

        key, size, limit, current = violated
        ident, window_name = by_key[(key, size)]
        retry_after = resets_in(size, now)
        violations = self.registry.record_violation(ip, now)

        logger.warning("Rate limit exceeded for %s: %d/%d per %s window",
                       ident, current, limit, window_name)
        event = SecurityEvent(
            event_type=EventType.RATE_LIMIT,
            ip=ip,
            timestamp=now,
            endpoint=endpoint or "",
            request_count=current,
            metadata={
                "identifier": ident.key,
                "window": window_name,
                "window_seconds": size,
                "limit": limit,
                "count": current,
                "exceeded": True,
                "retry_after": retry_after,
                "violation_count": violations,
            },
        )
        self.sink.record_event(event)
        self.sink.record_metric("security", "rate_limit_violations", 1, "count",
                                {"identifier": ident.key, "window": window_name})
        return RateResult(
            allowed=False,
            remaining=0,
            retry_after=retry_after,
            window=window_name,
            identifier=ident.key,
            limit=limit,
            event=event,
        )

    def usage(self, identifier: Identifier, now: float) -> dict:
        """Current counts for an identifier, per window (for stats/debugging)."""
        out = {"minute": self.counters.current(identifier.key, 60, now)}
        if identifier.kind is IdentifierKind.IP:
            out["hour"] = self.counters.current(identifier.key, 3600, now)
            out["day"] = self.counters.current(identifier.key, 86400, now)
            out["burst"] = self.counters.current(
                identifier.key + "#burst", self.settings.burst_window_seconds, now)
        return out
