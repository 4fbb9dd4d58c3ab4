"""Map guard SecurityEvents onto alerts.

Messages carry only the stable parts of an event (IP, identifier,
category) so repeats fingerprint together; counts and scores go into the
alert metadata instead.
"""

from dataclasses import dataclass, field

from alerts.models import AlertLevel
from guard.models import EventType, SecurityEvent

COMPONENT = "security"


@dataclass(frozen=True)
class MappedAlert:
    level: AlertLevel
    alert_type: str
    message: str
    metadata: dict = field(default_factory=dict)


def blocked_message(ip: str) -> str:
    return f"IP {ip} blocked"


def review_message(ip: str) -> str:
    return f"IP {ip} reached the violation limit; blacklist review requested"


def alert_for_event(event: SecurityEvent) -> MappedAlert | None:
    """The alert to raise for *event*, or None (unblocks resolve instead)."""
    meta = dict(event.metadata)
    base = {"ip": event.ip, "event_type": event.event_type.value,
            "timestamp": event.timestamp, **meta}

    if event.event_type is EventType.RATE_LIMIT:
        return MappedAlert(
            AlertLevel.WARNING, "rate_limit_exceeded",
            f"Rate limit exceeded for {meta.get('identifier', event.ip)} "
            f"({meta.get('window', 'minute')} window)",
            base)

    if event.event_type is EventType.DDOS:
        if meta.get("reason") == "geo_denied":
            return MappedAlert(
                AlertLevel.INFO, "geo_denied",
                f"Request from denied region {meta.get('region')} ({event.ip})",
                base)
        return MappedAlert(
            AlertLevel.CRITICAL, "ddos_attack",
            f"DDoS attack detected from {event.ip}",
            base)

    if event.event_type is EventType.ABUSE:
        return MappedAlert(
            AlertLevel.WARNING, "abuse_detected",
            f"Abuse detected from {event.ip}: {meta.get('category', 'unknown')}",
            base)

    if event.event_type is EventType.BLOCK:
        if meta.get("review_requested"):
            return MappedAlert(
                AlertLevel.CRITICAL, "ip_review_requested",
                review_message(event.ip), base)
        return MappedAlert(AlertLevel.WARNING, "ip_blocked", blocked_message(event.ip), base)

    return None
