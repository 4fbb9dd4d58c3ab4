"""Alert records, routing rules and the dedup fingerprint."""

import hashlib
import uuid
from dataclasses import dataclass, field
from enum import Enum


class AlertLevel(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @classmethod
    def parse(cls, value) -> "AlertLevel":
        """Accept any case; ``error`` is treated as ``critical``."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "error":
            name = "critical"
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"invalid alert level: {value!r}") from None


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


def normalize_message(message: str) -> str:
    return " ".join(str(message).lower().split())


def fingerprint(component: str, alert_type: str, message: str) -> str:
    """Identity of "the same underlying issue" across repeated triggers."""
    raw = f"{component}|{alert_type}|{normalize_message(message)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DeliveryAttempt:
    channel: str
    recipients: tuple
    attempt: int
    ok: bool
    at: float
    kind: str = "alert"  # alert | escalation | summary
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "recipients": list(self.recipients),
            "attempt": self.attempt,
            "ok": self.ok,
            "at": self.at,
            "kind": self.kind,
            "error": self.error,
        }


@dataclass
class Alert:
    component: str
    level: AlertLevel
    alert_type: str
    message: str
    created_at: float
    fingerprint: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AlertStatus = AlertStatus.ACTIVE
    last_seen_at: float = 0.0
    occurrences: int = 1
    escalation_level: int = 0
    acknowledged_at: float | None = None
    acknowledged_by: str = ""
    resolved_at: float | None = None
    resolution: str = ""
    aggregated: bool = False
    metadata: dict = field(default_factory=dict)
    deliveries: list = field(default_factory=list)

    def __post_init__(self):
        if not self.fingerprint:
            self.fingerprint = fingerprint(self.component, self.alert_type, self.message)
        if not self.last_seen_at:
            self.last_seen_at = self.created_at

    @property
    def is_open(self) -> bool:
        return self.status is not AlertStatus.RESOLVED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component": self.component,
            "level": self.level.value,
            "alert_type": self.alert_type,
            "message": self.message,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_seen_at": self.last_seen_at,
            "occurrences": self.occurrences,
            "escalation_level": self.escalation_level,
            "acknowledged_at": self.acknowledged_at,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at,
            "resolution": self.resolution,
            "aggregated": self.aggregated,
            "metadata": self.metadata,
            "deliveries": [d.to_dict() for d in self.deliveries],
        }


@dataclass(frozen=True)
class AlertRule:
    """Routing entry ``component:level:type -> recipients``; ``*`` matches anything.

    ``escalation`` optionally lists one recipient tuple per escalation level.
    """

    component: str
    level: str
    alert_type: str
    recipients: tuple = ()
    escalation: tuple = ()

    @property
    def key(self) -> tuple:
        return (self.component, self.level, self.alert_type)

    @classmethod
    def parse(cls, pattern: str, recipients, escalation=()) -> "AlertRule":
        parts = pattern.split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"routing pattern must be component:level:type, got {pattern!r}")
        component, level, alert_type = parts
        if level != "*":
            level = AlertLevel.parse(level).value
        return cls(component, level, alert_type, parse_recipients(recipients),
                   tuple(parse_recipients(r) for r in escalation))


def parse_recipients(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value)
