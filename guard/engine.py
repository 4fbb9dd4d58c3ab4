"""Decision engine: evaluates one request record against every guard.

Pure business logic, no Kafka dependency.  The service feeds request
records in and publishes the resulting security events.  Both invocation
modes (real-time and batch replay) call ``evaluate``; time always comes
from the record, so the same records give the same decisions.
"""

import logging

from guard.abuse.baseline import InMemoryBaselineStore
from guard.abuse.detector import AbuseDetector
from guard.ddos import DDoSGuard
from guard.models import (
    Action, Decision, EventType, InvocationMode, IPStatus, RequestRecord, SecurityEvent,
)
from guard.rate_limiter import RateLimiter
from guard.registry import IPRegistry
from guard.retry import RetryPolicy, TransientError
from guard.sinks import MemorySink, RetryingSink
from guard.store import InMemoryCounterStore, InMemoryIPStore

logger = logging.getLogger(__name__)

# Sink writes sit on the request path, so retries stay short.
SINK_RETRY = RetryPolicy(attempts=3, base_delay=0.05, max_delay=0.5)


class DecisionEngine:

    def __init__(self, settings, registry, rate_limiter, ddos, abuse, sink,
                 listeners=None):
        self.settings = settings
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.ddos = ddos
        self.abuse = abuse
        self.sink = sink
        # Callables fed every SecurityEvent the engine produces
        # (the alert pipeline's handle_event, in the service).
        self.listeners = list(listeners or [])

    @classmethod
    def build(cls, settings, sink=None, counters=None, ip_store=None, baselines=None,
              region_resolver=None, signatures=None, listeners=None,
              sink_retry: RetryPolicy = SINK_RETRY):
        """Wire the components with in-memory stores unless others are given."""
        sink = RetryingSink(sink if sink is not None else MemorySink(), sink_retry)
        counters = counters if counters is not None else InMemoryCounterStore()
        ip_store = ip_store if ip_store is not None else InMemoryIPStore()
        baselines = baselines if baselines is not None else InMemoryBaselineStore()

        registry = IPRegistry(settings, ip_store, sink)
        return cls(
            settings,
            registry=registry,
            rate_limiter=RateLimiter(settings, counters, registry, sink),
            ddos=DDoSGuard(settings, registry, sink, region_resolver),
            abuse=AbuseDetector(settings, baselines, signatures),
            sink=sink,
            listeners=listeners,
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(self, request, mode: InvocationMode = InvocationMode.REAL_TIME) -> Decision:
        """Decide allow / deny / flag for one request.  Never raises."""
        try:
            record = request if isinstance(request, RequestRecord) \
                else RequestRecord.from_dict(request)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning("Rejecting malformed request record: %s", e)
            ip = request.get("ip") if isinstance(request, dict) else None
            return Decision(Action.DENY, ip=str(ip or ""), reason="malformed_record", mode=mode)

        try:
            decision = self._decide(record, mode)
        except TransientError as e:
            logger.error("Backing store unavailable evaluating %s: %s", record.ip, e)
            decision = self._on_failure(record, mode, "store_unavailable")
        except Exception:
            logger.exception("Unexpected error evaluating request from %s", record.ip)
            decision = self._on_failure(record, mode, "internal_error")

        self._publish(decision.events)
        return decision

    def _decide(self, record: RequestRecord, mode) -> Decision:
        ip, now = record.ip, record.timestamp
        if record.connection == "open":
            self.ddos.connection_opened(ip)
        elif record.connection == "close":
            self.ddos.connection_closed(ip)

        status = self.registry.status(ip, now)
        if status is IPStatus.WHITELISTED:
            return Decision(Action.ALLOW, ip, reason="whitelisted", mode=mode)
        if status is IPStatus.BLACKLISTED:
            return Decision(Action.DENY, ip, reason="blacklisted", mode=mode)
        if status is IPStatus.TEMP_BLOCKED:
            rec = self.registry.record(ip)
            retry_after = round(rec.expires_at - now, 3) if rec and rec.expires_at else None
            return Decision(Action.DENY, ip, reason="temp_blocked",
                            retry_after=retry_after, mode=mode)

        events = []
        rate = self.rate_limiter.check(ip, record.endpoint, record.api_key, now)
        if rate.event is not None:
            events.append(rate.event)

        ddos = self.ddos.observe(ip, now)
        events.extend(e for e in (ddos.event, ddos.block_event) if e is not None)
        if ddos.geo_denied:
            return Decision(Action.DENY, ip, reason="geo_denied", events=events, mode=mode)
        if ddos.attack:
            return Decision(Action.DENY, ip, reason=f"ddos:{ddos.reason}",
                            retry_after=self.settings.ddos_block_minutes * 60,
                            events=events, mode=mode)

        self.abuse.observe(record, rejected=not rate.allowed)
        if not rate.allowed:
            return Decision(Action.DENY, ip,
                            reason=f"rate_limit:{rate.identifier}:{rate.window}",
                            retry_after=rate.retry_after, remaining=0,
                            events=events, mode=mode)

        report = self.abuse.analyze(ip, now)
        if not report.abusive:
            return Decision(Action.ALLOW, ip, remaining=rate.remaining,
                            events=events, mode=mode)

        abuse_events = self._respond_to_abuse(record, report)
        events.extend(abuse_events)
        reason = f"abuse:{report.category}"
        if any(e.event_type is EventType.BLOCK for e in abuse_events):
            return Decision(Action.DENY, ip, reason=reason, events=events, mode=mode)
        return Decision(Action.FLAG, ip, reason=reason, remaining=rate.remaining,
                        events=events, mode=mode)

    def _respond_to_abuse(self, record: RequestRecord, report) -> list[SecurityEvent]:
        ip, now = record.ip, record.timestamp
        violations = self.registry.record_violation(ip, now)
        logger.warning("Abuse detected from %s: %s (anomaly=%.1f behavioral=%.1f)",
                       ip, ",".join(report.signatures or report.triggered),
                       report.anomaly_score, report.behavioral_score)
        event = SecurityEvent(
            event_type=EventType.ABUSE,
            ip=ip,
            timestamp=now,
            endpoint=record.endpoint,
            user_agent=record.user_agent,
            metadata={**report.to_dict(), "category": report.category,
                      "violation_count": violations},
        )
        self.sink.record_event(event)
        self.sink.record_metric("security", "abuse_detections", 1, "count",
                                {"category": report.category})
        self.sink.record_metric("security", "anomaly_score", report.anomaly_score,
                                "score", {"ip": ip})
        events = [event]

        if self.settings.abuse_auto_block:
            block = self.registry.add_block(
                ip, f"Abuse detected: {report.category}", violations, now,
                category="abuse")
            if block is not None:
                events.append(block)
        # Must re-accumulate before firing again.
        self.abuse.forget(ip)
        return events

    def _on_failure(self, record: RequestRecord, mode, reason: str) -> Decision:
        if self.settings.failure_policy == "open":
            return Decision(Action.FLAG, record.ip, reason=f"fail_open:{reason}", mode=mode)
        return Decision(Action.DENY, record.ip, reason=f"fail_closed:{reason}", mode=mode)

    def _publish(self, events) -> None:
        for event in events:
            for listener in self.listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Event listener failed for %s event on %s",
                                     event.event_type.value, event.ip)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self, now: float) -> list[SecurityEvent]:
        """Expire temp blocks and forget idle per-IP state.  Never raises."""
        try:
            events = self.registry.sweep_expired(now)
        except TransientError as e:
            logger.error("Expiry sweep failed: %s", e)
            return []
        self._publish(events)

        purge = getattr(self.rate_limiter.counters, "purge_idle", None)
        if purge is not None:
            purge(now)
        self.ddos.purge_idle(now)
        self.abuse.purge_idle(now)

        # Kafka topics carry their own retention; only local stores purge here.
        purge_events = getattr(self.sink, "purge_events", None)
        if purge_events is not None:
            cutoff = now - self.settings.event_retention_days * 86400
            purged = purge_events(cutoff)
            if purged:
                logger.info("Purged %d security events older than %d days",
                            purged, self.settings.event_retention_days)
        return events

    def close(self) -> None:
        self.abuse.close()
