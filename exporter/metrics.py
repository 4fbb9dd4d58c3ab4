"""Prometheus metrics for security events, guard metrics and alerts.

``SecurityMetrics`` updates counters from the JSON the guard publishes,
so the same code serves the Kafka exporter (dicts off the wire) and the
in-process ``PrometheusSink`` (objects handed over directly).

Every collector registers in the registry passed in; the default is the
prometheus_client global REGISTRY that ``start_http_server()`` serves.
Tests pass a fresh ``CollectorRegistry`` per case.
"""

import threading

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

from guard.sinks import EventSink


class SecurityMetrics:

    def __init__(self, registry=REGISTRY):
        # ---------------------------------------------------------------
        # Security events
        # ---------------------------------------------------------------
        self.events_total = Counter(
            "guard_security_events_total",
            "Security events recorded by the guard",
            ["event_type"], registry=registry,
        )
        self.rate_limit_violations = Counter(
            "guard_rate_limit_violations_total",
            "Requests denied by a rate limit window",
            ["window"], registry=registry,
        )
        self.ddos_detections = Counter(
            "guard_ddos_detections_total",
            "DDoS detections and geo denials by reason",
            ["reason"], registry=registry,
        )
        self.abuse_detections = Counter(
            "guard_abuse_detections_total",
            "Abuse detections by category",
            ["category"], registry=registry,
        )
        self.ips_blocked = Counter(
            "guard_ips_blocked_total",
            "Temporary blocks applied",
            ["category"], registry=registry,
        )
        self.ips_unblocked = Counter(
            "guard_ips_unblocked_total",
            "Blocks lifted by expiry or operator action",
            registry=registry,
        )
        self.review_requests = Counter(
            "guard_blacklist_review_requests_total",
            "IPs flagged for operator blacklist review",
            registry=registry,
        )

        # ---------------------------------------------------------------
        # Score distribution
        # ---------------------------------------------------------------
        self.anomaly_score = Histogram(
            "guard_anomaly_score",
            "Anomaly score of IPs flagged as abusive",
            buckets=[10, 25, 50, 70, 85, 100],
            registry=registry,
        )

        # ---------------------------------------------------------------
        # Alerts
        # ---------------------------------------------------------------
        self.alerts_total = Counter(
            "guard_alerts_total",
            "Alerts created (after deduplication)",
            ["component", "level", "alert_type"], registry=registry,
        )
        self.alerts_open = Gauge(
            "guard_alerts_open",
            "Alerts not yet resolved",
            ["level"], registry=registry,
        )
        self.alert_escalations = Counter(
            "guard_alert_escalations_total",
            "Escalation steps taken",
            ["level"], registry=registry,
        )
        self.delivery_failures = Counter(
            "guard_alert_delivery_failures_total",
            "Failed notification attempts by channel",
            ["channel"], registry=registry,
        )

        self.events_per_second = Gauge(
            "guard_exported_messages_per_second",
            "Current exporter processing rate",
            registry=registry,
        )
        self.export_errors = Counter(
            "guard_export_errors_total",
            "JSON parse or Kafka consumer errors in the exporter",
            registry=registry,
        )

        # alert id -> (level, escalation_level, deliveries seen)
        self._alerts: dict[str, tuple] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Updaters
    # ------------------------------------------------------------------

    def process_event(self, event: dict) -> None:
        event_type = event.get("event_type", "unknown")
        meta = event.get("metadata") or {}
        self.events_total.labels(event_type=event_type).inc()

        if event_type == "rate_limit":
            self.rate_limit_violations.labels(window=meta.get("window", "unknown")).inc()
        elif event_type == "ddos":
            self.ddos_detections.labels(reason=meta.get("reason", "unknown")).inc()
        elif event_type == "abuse":
            self.abuse_detections.labels(category=meta.get("category", "unknown")).inc()
            self.anomaly_score.observe(meta.get("anomaly_score", 0) or 0)
        elif event_type == "block":
            self.ips_blocked.labels(category=meta.get("category", "unknown")).inc()
            if meta.get("review_requested"):
                self.review_requests.inc()
        elif event_type == "unblock":
            self.ips_unblocked.inc()

    def process_alert(self, alert: dict) -> None:
        alert_id = alert.get("id", "")
        level = alert.get("level", "unknown")
        escalation = alert.get("escalation_level", 0) or 0
        deliveries = alert.get("deliveries") or []
        resolved = alert.get("status") == "resolved"

        with self._lock:
            previous = self._alerts.get(alert_id)
            if previous is None:
                self.alerts_total.labels(
                    component=alert.get("component", "unknown"), level=level,
                    alert_type=alert.get("alert_type", "unknown"),
                ).inc()
                self.alerts_open.labels(level=level).inc()
                previous = (level, 0, 0)
            _, seen_escalation, seen_deliveries = previous

            for _ in range(seen_escalation, escalation):
                self.alert_escalations.labels(level=level).inc()
            for attempt in deliveries[seen_deliveries:]:
                if not attempt.get("ok", True):
                    self.delivery_failures.labels(channel=attempt.get("channel", "unknown")).inc()

            if resolved:
                self.alerts_open.labels(level=level).dec()
                self._alerts.pop(alert_id, None)
            else:
                self._alerts[alert_id] = (level, max(escalation, seen_escalation),
                                          max(len(deliveries), seen_deliveries))


class PrometheusSink(EventSink):
    """EventSink that updates Prometheus collectors in process."""

    def __init__(self, metrics: SecurityMetrics | None = None):
        self.metrics = metrics or SecurityMetrics()

    def record_event(self, event):
        self.metrics.process_event(event.to_dict())

    def record_metric(self, component, name, value, unit="count", metadata=None):
        # Per-decision metrics are already derived from the events.
        pass

    def upsert_alert(self, alert):
        self.metrics.process_alert(alert.to_dict())
