"""Prometheus metrics exporter: consumes guard topics and exposes metrics.

Subscribes to the security-events and alerts topics the guard service
publishes, updating Prometheus counters, histograms and gauges in real
time.  Grafana reads from Prometheus to render the security dashboard.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9090
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import start_http_server

from exporter.metrics import SecurityMetrics

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down exporter...")
    running = False


def route_message(metrics: SecurityMetrics, topic: str, data: dict,
                  events_topic: str = "security-events", alerts_topic: str = "alerts") -> bool:
    """Apply one decoded message to the metrics.  Returns False for unknown topics."""
    if topic == events_topic:
        metrics.process_event(data)
    elif topic == alerts_topic:
        metrics.process_alert(data)
    else:
        return False
    return True


class _Throughput:
    """Feeds the messages-per-second gauge, recomputed at most once a second."""

    def __init__(self, gauge, clock=time.time):
        self.gauge = gauge
        self.clock = clock
        self.total = 0
        self._since = clock()
        self._seen = 0

    def tick(self):
        self.total += 1
        self._seen += 1
        now = self.clock()
        elapsed = now - self._since
        if elapsed >= 1.0:
            self.gauge.set(self._seen / elapsed)
            self._since = now
            self._seen = 0


def _decode(msg, metrics):
    """JSON payload of *msg*, or None after counting the error."""
    if msg.error():
        if msg.error().code() != KafkaError._PARTITION_EOF:
            metrics.export_errors.inc()
            print(f"Consumer error: {msg.error()}", file=sys.stderr)
        return None
    try:
        return json.loads(msg.value().decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        metrics.export_errors.inc()
        return None


def main():
    parser = argparse.ArgumentParser(description="Prometheus metrics exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--events-topic", default="security-events")
    parser.add_argument("--alerts-topic", default="alerts")
    parser.add_argument("--group-id", default="guard-metrics-exporter")
    parser.add_argument(
        "--port", type=int, default=9090, help="Prometheus metrics HTTP port",
    )
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    metrics = SecurityMetrics()
    start_http_server(args.port)
    print(f"Prometheus metrics server started on :{args.port}")

    # Only live traffic matters for the gauges; skip whatever is already on the topics.
    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.events_topic, args.alerts_topic])
    throughput = _Throughput(metrics.events_per_second)

    print(f"Exporter consuming from {args.events_topic} + {args.alerts_topic} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            data = _decode(msg, metrics)
            if data is None:
                continue
            if not route_message(metrics, msg.topic(), data,
                                 args.events_topic, args.alerts_topic):
                continue

            throughput.tick()
            if throughput.total % 5000 == 0:
                print(f"  ... {throughput.total} messages exported to metrics")
    finally:
        consumer.close()
        print(f"Exporter done. {throughput.total} messages processed.")


if __name__ == "__main__":
    main()
