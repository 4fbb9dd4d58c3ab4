"""API request traffic generator.

Simulates gateway request logs from a mix of normal clients and abusive
ones: floods, scrapers, injection attempts, credential stuffers.  Records
match what the guard consumes (timestamp, ip, endpoint, api_key,
user_agent, status_code, query).

Publishes to Kafka, or with ``--jsonl`` writes a replay file for
``python -m guard.main --replay`` using simulated time.

Usage:
    python producer.py
    python producer.py --normal 20 --flooders 1 --scrapers 2 --injectors 1 --stuffers 1
    python producer.py --jsonl traffic.jsonl --duration 600
"""

import argparse
import json
import random
import signal
import time
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

ENDPOINTS = [
    "/api/v1/notes", "/api/v1/notes/search", "/api/v1/users/me",
    "/api/v1/stats", "/api/v1/countries", "/api/v1/health",
]
BROWSER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:127.0) Gecko/20100101 Firefox/127.0",
]
INJECTION_QUERIES = [
    "id=1' OR '1'='1", "q=1 UNION SELECT username,password FROM users",
    "q=<script>alert(1)</script>", "file=../../../../etc/passwd",
]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


# ---------------------------------------------------------------------------
# Client profiles
# ---------------------------------------------------------------------------

@dataclass
class Client:
    ip: str
    role: str  # normal | flooder | scraper | injector | stuffer
    requests_per_min: float
    api_key: str | None
    user_agent: str


def _create_clients(n_normal, n_flooders, n_scrapers, n_injectors, n_stuffers):
    """Build the client pool.  Each client keeps one IP and user agent."""
    clients = []
    host = 0

    def next_ip(net):
        nonlocal host
        host += 1
        return f"{net}.{host // 250}.{host % 250 + 1}"

    for _ in range(n_normal):
        clients.append(Client(next_ip("10.1"), "normal", random.uniform(2, 40),
                              f"key_{random.randrange(16**6):06x}",
                              random.choice(BROWSER_AGENTS)))
    # Floods: far above the DDoS threshold for short bursts
    for _ in range(n_flooders):
        clients.append(Client(next_ip("198.51"), "flooder", random.uniform(6000, 9000),
                              None, "Go-http-client/1.1"))
    # Scrapers: many distinct pages, steady rate under the per-minute limit
    for _ in range(n_scrapers):
        clients.append(Client(next_ip("203.0"), "scraper", random.uniform(30, 55),
                              None, "python-requests/2.32"))
    for _ in range(n_injectors):
        clients.append(Client(next_ip("192.0"), "injector", random.uniform(5, 15),
                              None, random.choice(BROWSER_AGENTS)))
    for _ in range(n_stuffers):
        clients.append(Client(next_ip("100.64"), "stuffer", random.uniform(20, 50),
                              None, random.choice(BROWSER_AGENTS)))
    return clients


# ---------------------------------------------------------------------------
# Record generation
# ---------------------------------------------------------------------------

def _make_request(client: Client, ts: float) -> dict:
    record = {
        "timestamp": ts,
        "ip": client.ip,
        "endpoint": random.choice(ENDPOINTS),
        "api_key": client.api_key,
        "user_agent": client.user_agent,
        "status_code": 200 if random.random() > 0.02 else 404,
        "query": "",
    }
    if client.role == "scraper":
        record["endpoint"] = f"/api/v1/notes/{random.randrange(1_000_000)}"
    elif client.role == "injector" and random.random() < 0.5:
        record["endpoint"] = "/api/v1/notes/search"
        record["query"] = random.choice(INJECTION_QUERIES)
        record["status_code"] = 400
    elif client.role == "stuffer":
        record["endpoint"] = "/api/v1/auth/login"
        record["status_code"] = 401 if random.random() < 0.95 else 200
    return record


def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


def write_jsonl(path, clients, duration, start):
    """Simulate *duration* seconds of traffic into a replay file."""
    count = 0
    with open(path, "w") as f:
        for client in clients:
            rate = client.requests_per_min / 60.0
            # Floods last a few seconds; everyone else spans the whole run.
            span = min(duration, 3) if client.role == "flooder" else duration
            offset = random.uniform(0, max(duration - span, 0))
            ts = start + offset
            while ts < start + offset + span:
                f.write(json.dumps(_make_request(client, round(ts, 3))) + "\n")
                count += 1
                ts += random.expovariate(rate)
    return count


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="API request traffic generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="api-requests")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--flooders", type=int, default=1)
    parser.add_argument("--scrapers", type=int, default=1)
    parser.add_argument("--injectors", type=int, default=1)
    parser.add_argument("--stuffers", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target records/sec")
    parser.add_argument("--jsonl", help="write a replay file instead of publishing")
    parser.add_argument("--duration", type=float, default=300,
                        help="simulated seconds for --jsonl")
    args = parser.parse_args()

    clients = _create_clients(
        args.normal, args.flooders, args.scrapers, args.injectors, args.stuffers,
    )

    print(f"Clients: {len(clients)} total")
    for c in clients:
        print(f"  {c.ip:<15s} {c.role:<8s} ~{c.requests_per_min:>6.0f} rpm")

    if args.jsonl:
        count = write_jsonl(args.jsonl, clients, args.duration, time.time())
        print(f"Done. {count} records written to {args.jsonl}.")
        return

    signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
    signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination

    print(f"Generating to topic '{args.topic}' at ~{args.eps} records/sec")
    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "api-request-generator",
    })

    weights = [c.requests_per_min for c in clients]
    count = 0
    delay = 1.0 / args.eps

    while running:
        client = random.choices(clients, weights=weights, k=1)[0]
        record = _make_request(client, time.time())

        producer.produce(
            topic=args.topic,
            key=record["ip"].encode(),
            value=json.dumps(record),
        )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} records produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} records produced.")


if __name__ == "__main__":
    main()
