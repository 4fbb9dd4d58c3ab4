"""Guard service: reads request records, decides, publishes events and alerts.

Consumes from api-requests, evaluates each record through the decision
engine, publishes SecurityEvents to security-events and alerts to alerts.
A background task sweeps expired blocks; another drives alert escalation
timers.  One consumer instance per partition (scaled via consumer group).

Records carry timestamp, ip, endpoint and optionally api_key, user_agent,
status_code, query and connection ("open" or "close", feeding the DDoS
guard's concurrent-connection count).  Notifications go out on a small
worker pool, off the decision path.

``--replay FILE`` runs a JSONL file of request records through the same
engine in timestamp order instead of consuming from Kafka.

Usage:
    python -m guard.main
    python -m guard.main --bootstrap-servers kafka-1:29092 --config guard.yml
    python -m guard.main --replay requests.jsonl --routes routes.yml
"""

import argparse
import json
import logging
import signal
import sys
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from confluent_kafka import Consumer, Producer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from alerts.channels import Dispatcher, EmailChannel, LogChannel, WebhookChannel
from alerts.pipeline import AlertPipeline
from alerts.routing import AlertRouter, load_router
from exporter.metrics import PrometheusSink
from guard.abuse import builtin_signatures
from guard.abuse.loader import load_signatures
from guard.config import ConfigError, load_settings
from guard.engine import DecisionEngine
from guard.models import Action
from guard.retry import RetryPolicy
from guard.scheduler import PeriodicTask, RealTimeRunner, replay
from guard.sinks import CompositeSink, KafkaSink, MemorySink

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down guard...")
    running = False


def _ensure_topic(bootstrap_servers, topic):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=3, replication_factor=3)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def _signatures(args):
    signatures = builtin_signatures() + load_signatures()
    if args.signatures:
        signatures += load_signatures(args.signatures)
    return signatures


def _pipeline(args, settings, sink):
    router = load_router(args.routes) if args.routes else AlertRouter()
    channels = [LogChannel()]
    if args.smtp_host and args.smtp_sender:
        channels.append(EmailChannel(args.smtp_host, args.smtp_sender, port=args.smtp_port))
    if args.webhook_url:
        channels.append(WebhookChannel(args.webhook_url))
    dispatcher = Dispatcher(channels, RetryPolicy(
        attempts=settings.notification_retries,
        base_delay=settings.retry_base_delay_seconds,
    ))
    delivery = ThreadPoolExecutor(max_workers=2, thread_name_prefix="alert-delivery")
    return AlertPipeline(settings, router, dispatcher, sink=sink, executor=delivery)


def _print_decision(decision):
    if decision.action is Action.ALLOW:
        return
    print(f"{decision.action.value.upper():<5s} ip={decision.ip:<15s} "
          f"reason={decision.reason}"
          + (f"  retry_after={decision.retry_after}" if decision.retry_after else ""))


def _read_jsonl(path):
    records = []
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                print(f"{path}:{lineno}: skipping malformed line ({e})", file=sys.stderr)
    return records


def run_replay(args, settings):
    sink = MemorySink()
    pipeline = _pipeline(args, settings, sink)
    engine = DecisionEngine.build(settings, sink=sink, signatures=_signatures(args),
                                  listeners=[pipeline.handle_event])
    records = _read_jsonl(args.replay)
    decisions = replay(engine, records, tick=pipeline.tick)
    last = max((r["timestamp"] for r in records
                if isinstance(r, dict) and isinstance(r.get("timestamp"), (int, float))),
               default=None)
    if last is not None:
        # Flush aggregation windows and timers that closed with the last record.
        pipeline.tick(float(last))
    engine.close()
    pipeline.close()

    for decision in decisions:
        _print_decision(decision)
    actions = Counter(d.action.value for d in decisions)
    stats = pipeline.stats()
    print(f"Done. {len(decisions)} records replayed  "
          + " ".join(f"{a}={actions.get(a, 0)}" for a in ("allow", "deny", "flag"))
          + f" events={len(sink.events())} alerts={stats['total']}")
    return decisions


def run_service(args, settings):
    for topic in (args.events_topic, args.alerts_topic, args.metrics_topic):
        _ensure_topic(args.bootstrap_servers, topic)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])
    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    sink = KafkaSink(producer, args.events_topic, args.alerts_topic, args.metrics_topic)
    if args.metrics_port:
        start_http_server(args.metrics_port)
        print(f"Prometheus metrics server started on :{args.metrics_port}")
        sink = CompositeSink(sink, PrometheusSink())

    pipeline = _pipeline(args, settings, sink)
    engine = DecisionEngine.build(settings, sink=sink, signatures=_signatures(args),
                                  listeners=[pipeline.handle_event])
    runner = RealTimeRunner(engine, max_workers=1)
    tasks = [
        PeriodicTask("guard-sweep", settings.sweep_interval_seconds, engine.sweep).start(),
        PeriodicTask("alert-timers", 1.0, pipeline.tick).start(),
    ]

    consumed = 0
    denied = 0
    print(f"Guard started  input={args.input_topic}  events={args.events_topic}  "
          f"alerts={args.alerts_topic}  signatures={len(engine.abuse.signatures)}  "
          f"failure_policy={settings.failure_policy}")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                request = json.loads(msg.value().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                print(f"Skipping undecodable message: {e}", file=sys.stderr)
                continue
            consumed += 1

            decision = runner.evaluate(request)
            if not decision.allowed:
                denied += 1
            _print_decision(decision)

            # Batch flush every 1000 records (producer buffers internally)
            if consumed % 1000 == 0:
                producer.flush()

            if consumed % 500 == 0:
                print(f"  ... {consumed} records evaluated, {denied} denied")
    finally:
        for task in tasks:
            task.stop(timeout=5)
        runner.shutdown()
        engine.close()
        pipeline.close()
        producer.flush()
        consumer.close()
        print(f"Done. {consumed} records evaluated, {denied} denied.")


def main(argv=None):
    parser = argparse.ArgumentParser(description="API security guard")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="api-requests")
    parser.add_argument("--events-topic", default="security-events")
    parser.add_argument("--alerts-topic", default="alerts")
    parser.add_argument("--metrics-topic", default="security-metrics")
    parser.add_argument("--group-id", default="api-guard")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--signatures", help="directory of extra YAML abuse signatures")
    parser.add_argument("--routes", help="YAML alert routing file")
    parser.add_argument("--smtp-host")
    parser.add_argument("--smtp-port", type=int, default=587)
    parser.add_argument("--smtp-sender")
    parser.add_argument("--webhook-url", help="Slack-compatible incoming webhook")
    parser.add_argument("--metrics-port", type=int, default=0,
                        help="serve Prometheus metrics on this port (0 = off)")
    parser.add_argument("--replay", metavar="FILE",
                        help="replay a JSONL file of request records and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(args.config)
    except (ConfigError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.replay:
        run_replay(args, settings)
        return

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    run_service(args, settings)


if __name__ == "__main__":
    main()
