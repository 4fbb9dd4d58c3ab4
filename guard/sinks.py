"""Write side of the event store: security events, metrics, alerts.

The core only ever calls three methods: ``record_event``,
``record_metric`` and ``upsert_alert``; the durable store behind them is an
implementation detail.  ``MemorySink`` keeps everything in process (tests,
batch replay); ``KafkaSink`` publishes JSON to topics for the exporter and
downstream consumers; ``CompositeSink`` fans out to several sinks.
"""

import json
import logging
import threading

from confluent_kafka import KafkaException

from guard.retry import NO_RETRY, RetryPolicy, TransientError, retry_call

logger = logging.getLogger(__name__)


class EventSink:
    """Narrow persistence interface.  Subclass and implement all three."""

    def record_event(self, event) -> None:
        raise NotImplementedError

    def record_metric(self, component: str, name: str, value: float,
                      unit: str = "count", metadata: dict | None = None) -> None:
        raise NotImplementedError

    def upsert_alert(self, alert) -> None:
        raise NotImplementedError


class MemorySink(EventSink):
    """In-process store.  Also answers the read queries the core needs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: list = []
        self.metrics: list[dict] = []
        self.alerts: dict = {}

    def record_event(self, event):
        with self._lock:
            self._events.append(event)

    def record_metric(self, component, name, value, unit="count", metadata=None):
        with self._lock:
            self.metrics.append({
                "component": component,
                "name": name,
                "value": value,
                "unit": unit,
                "metadata": dict(metadata or {}),
            })

    def upsert_alert(self, alert):
        with self._lock:
            self.alerts[alert.id] = alert

    def events(self, event_type=None, ip=None, since=None) -> list:
        with self._lock:
            out = list(self._events)
        if event_type is not None:
            out = [e for e in out if e.event_type == event_type]
        if ip is not None:
            out = [e for e in out if e.ip == ip]
        if since is not None:
            out = [e for e in out if e.timestamp >= since]
        return out

    def metric_values(self, name: str) -> list:
        with self._lock:
            return [m["value"] for m in self.metrics if m["name"] == name]

    def purge_events(self, before: float) -> int:
        """Drop events older than *before* (retention)."""
        with self._lock:
            kept = [e for e in self._events if e.timestamp >= before]
            purged = len(self._events) - len(kept)
            self._events = kept
        return purged


class KafkaSink(EventSink):
    """Publishes events, metrics and alerts as JSON to Kafka topics.

    The producer is injected so the service owns its lifecycle (flush on
    shutdown).  Buffer-full and broker errors surface as TransientError so
    the caller's retry policy applies.
    """

    def __init__(self, producer, events_topic="security-events",
                 alerts_topic="alerts", metrics_topic="security-metrics"):
        self.producer = producer
        self.events_topic = events_topic
        self.alerts_topic = alerts_topic
        self.metrics_topic = metrics_topic

    def _produce(self, topic, key, payload):
        try:
            self.producer.produce(topic, key=key.encode("utf-8"),
                                  value=json.dumps(payload).encode("utf-8"))
            self.producer.poll(0)
        except (BufferError, KafkaException) as e:
            raise TransientError(f"kafka produce to {topic} failed: {e}") from e

    def record_event(self, event):
        self._produce(self.events_topic, event.ip or "global", event.to_dict())

    def record_metric(self, component, name, value, unit="count", metadata=None):
        self._produce(self.metrics_topic, component, {
            "component": component,
            "name": name,
            "value": value,
            "unit": unit,
            "metadata": dict(metadata or {}),
        })

    def upsert_alert(self, alert):
        self._produce(self.alerts_topic, alert.id, alert.to_dict())


class CompositeSink(EventSink):
    """Writes to every sink; a failing sink doesn't stop the others, but the
    first error is re-raised once all have been tried."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def _each(self, method, *args, **kwargs):
        error = None
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args, **kwargs)
            except TransientError as e:
                logger.warning("%s.%s failed: %s", type(sink).__name__, method, e)
                error = error or e
        if error is not None:
            raise error

    def record_event(self, event):
        self._each("record_event", event)

    def record_metric(self, component, name, value, unit="count", metadata=None):
        self._each("record_metric", component, name, value, unit, metadata)

    def upsert_alert(self, alert):
        self._each("upsert_alert", alert)


class RetryingSink(EventSink):
    """Wraps a sink with exponential-backoff retries on TransientError."""

    def __init__(self, sink: EventSink, policy: RetryPolicy = NO_RETRY):
        self.sink = sink
        self.policy = policy

    def _call(self, fn, *args):
        return retry_call(fn, *args, policy=self.policy)

    def record_event(self, event):
        self._call(self.sink.record_event, event)

    def record_metric(self, component, name, value, unit="count", metadata=None):
        self._call(self.sink.record_metric, component, name, value, unit, metadata)

    def upsert_alert(self, alert):
        self._call(self.sink.upsert_alert, alert)

    def __getattr__(self, name):
        # Read-side helpers (MemorySink.events, purge_events) pass through.
        if name == "sink":
            raise AttributeError(name)
        return getattr(self.sink, name)
