"""Core records shared by every guard component.

Request records arrive as raw dicts from the logging pipeline and are
normalized into ``RequestRecord`` once, at the engine boundary, so the
detectors get schema guarantees instead of stringly-typed key lookups.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType

_CONNECTION_STATES = (None, "open", "close")


class IdentifierKind(str, Enum):
    IP = "ip"
    API_KEY = "api_key"
    ENDPOINT = "endpoint"


@dataclass(frozen=True)
class Identifier:
    """Key for counters and registry lookups: an IP, an API key, or (IP, endpoint)."""

    kind: IdentifierKind
    value: str
    endpoint: str | None = None

    @classmethod
    def for_ip(cls, ip: str) -> "Identifier":
        return cls(IdentifierKind.IP, ip)

    @classmethod
    def for_api_key(cls, api_key: str) -> "Identifier":
        return cls(IdentifierKind.API_KEY, api_key)

    @classmethod
    def for_endpoint(cls, ip: str, endpoint: str) -> "Identifier":
        return cls(IdentifierKind.ENDPOINT, ip, endpoint)

    @property
    def key(self) -> str:
        if self.kind is IdentifierKind.ENDPOINT:
            return f"endpoint:{self.value}:{self.endpoint}"
        return f"{self.kind.value}:{self.value}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class RequestRecord:
    timestamp: float
    ip: str
    endpoint: str = "/"
    api_key: str | None = None
    user_agent: str = ""
    status_code: int = 200
    query: str = ""
    connection: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RequestRecord":
        """Normalize a raw request dict.

        Raises ValueError on a missing ip or timestamp, or on bad fields.
        ``connection`` is optional: "open" or "close" marks the request that
        opened or closed the client's connection.
        """
        ip = data.get("ip")
        if not ip or not isinstance(ip, str):
            raise ValueError(f"invalid ip: {ip!r}")
        ts = data.get("timestamp")
        if ts is None:
            raise ValueError("missing timestamp")
        connection = data.get("connection") or None
        if connection not in _CONNECTION_STATES:
            raise ValueError(f"invalid connection state: {connection!r}")
        status = data.get("status_code")
        try:
            ts = float(ts)
            status = int(status) if status is not None else 200
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid request record: {e}") from e
        return cls(
            timestamp=ts,
            ip=ip.strip(),
            endpoint=data.get("endpoint") or "/",
            api_key=data.get("api_key") or None,
            user_agent=data.get("user_agent") or "",
            status_code=status,
            query=data.get("query") or "",
            connection=connection,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class EventType(str, Enum):
    RATE_LIMIT = "rate_limit"
    DDOS = "ddos"
    ABUSE = "abuse"
    BLOCK = "block"
    UNBLOCK = "unblock"


@dataclass(frozen=True)
class SecurityEvent:
    """Write-once record of a security decision."""

    event_type: EventType
    ip: str
    timestamp: float
    endpoint: str = ""
    user_agent: str = ""
    request_count: int = 0
    metadata: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        # Freeze the metadata too; the dataclass alone only freezes the reference.
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "ip": self.ip,
            "timestamp": self.timestamp,
            "endpoint": self.endpoint,
            "user_agent": self.user_agent,
            "request_count": self.request_count,
            "metadata": dict(self.metadata),
        }


class ListType(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    TEMP_BLOCK = "temp_block"


class IPStatus(str, Enum):
    WHITELISTED = "whitelisted"
    BLACKLISTED = "blacklisted"
    TEMP_BLOCKED = "temp_blocked"
    CLEAR = "clear"


@dataclass
class IPRecord:
    ip: str
    list_type: ListType | None = None
    reason: str = ""
    created_at: float = 0.0
    expires_at: float | None = None
    violation_count: int = 0
    last_violation_at: float | None = None
    category: str = ""
    review_requested: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        d = asdict(self)
        d["list_type"] = self.list_type.value if self.list_type else None
        return d


class InvocationMode(str, Enum):
    REAL_TIME = "real_time"
    BATCH_REPLAY = "batch_replay"


class Action(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    FLAG = "flag"


@dataclass
class Decision:
    action: Action
    ip: str
    reason: str = ""
    retry_after: float | None = None
    remaining: int | None = None
    events: list = field(default_factory=list)
    mode: InvocationMode = InvocationMode.REAL_TIME

    @property
    def allowed(self) -> bool:
        return self.action is not Action.DENY

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "ip": self.ip,
            "reason": self.reason,
            "retry_after": self.retry_after,
            "remaining": self.remaining,
            "events": [e.event_type.value for e in self.events],
            "mode": InvocationMode(self.mode).value,
        }
