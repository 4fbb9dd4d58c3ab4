"""Immutable guard settings, validated once at startup.

Every component receives the same ``Settings`` instance.  Nothing re-reads
thresholds mid-decision: a bad value fails here, before the first request.
"""

from dataclasses import dataclass, fields
from pathlib import Path

import yaml


class ConfigError(ValueError):
    """Missing or invalid configuration value."""


_FAILURE_POLICIES = ("open", "closed")


@dataclass(frozen=True)
class Settings:
    # Rate limiting
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 1000
    rate_limit_per_day: int = 10000
    burst_size: int = 10
    burst_window_seconds: int = 1
    api_key_rate_limit_per_minute: int = 100
    endpoint_rate_limit_per_minute: int = 200

    # DDoS
    ddos_requests_per_second: int = 100
    ddos_concurrent_connections: int = 500
    ddos_block_minutes: int = 15
    ddos_window_seconds: int = 60
    ddos_top_offenders: int = 5
    geo_filtering_enabled: bool = False
    geo_blocked_regions: tuple = ()
    geo_allowed_regions: tuple = ()

    # Abuse
    abuse_anomaly_threshold: float = 70.0
    abuse_behavioral_threshold: float = 70.0
    abuse_window_seconds: int = 3600
    abuse_auto_block: bool = True
    anomaly_min_requests: int = 10
    anomaly_ratio_scale: float = 25.0
    behavioral_window_seconds: int = 300
    behavioral_min_volume: int = 100
    scraping_volume_fraction: float = 0.8
    endpoint_diversity_limit: int = 20
    user_agent_diversity_limit: int = 10
    baseline_timeout_seconds: float = 0.25

    # IP registry
    violation_period_hours: int = 24
    sweep_interval_seconds: int = 60

    # Alerting
    dedup_enabled: bool = True
    dedup_window_minutes: int = 60
    aggregation_enabled: bool = True
    aggregation_window_minutes: int = 15
    escalation_level_minutes: tuple = (15, 30, 60)
    warning_escalation_multiplier: int = 2
    notification_retries: int = 3
    retry_base_delay_seconds: float = 0.5

    # Retention / failure handling
    event_retention_days: int = 90
    alert_retention_days: int = 180
    failure_policy: str = "closed"

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            default = f.default
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ConfigError(f"{f.name}: expected true/false, got {value!r}")
            elif isinstance(default, (int, float)):
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigError(f"{f.name}: expected a number, got {value!r}")
                if value <= 0:
                    raise ConfigError(f"{f.name}: must be positive, got {value!r}")
                if isinstance(default, int) and not isinstance(value, int):
                    raise ConfigError(f"{f.name}: expected an integer, got {value!r}")

        if self.failure_policy not in _FAILURE_POLICIES:
            raise ConfigError(
                f"failure_policy: must be one of {_FAILURE_POLICIES}, "
                f"got {self.failure_policy!r}"
            )
        for name in ("abuse_anomaly_threshold", "abuse_behavioral_threshold"):
            if getattr(self, name) > 100:
                raise ConfigError(f"{name}: scores are 0-100, got {getattr(self, name)}")
        if self.scraping_volume_fraction > 1:
            raise ConfigError(
                f"scraping_volume_fraction: at most 1, got {self.scraping_volume_fraction}")

        ladder = self.escalation_level_minutes
        if not ladder:
            raise ConfigError("escalation_level_minutes: at least one level required")
        if any(isinstance(m, bool) or not isinstance(m, (int, float)) or m <= 0
               for m in ladder):
            raise ConfigError(f"escalation_level_minutes: positive numbers only, got {ladder!r}")
        if list(ladder) != sorted(ladder):
            raise ConfigError(f"escalation_level_minutes: must be non-decreasing, got {ladder!r}")

        for name in ("geo_blocked_regions", "geo_allowed_regions"):
            regions = getattr(self, name)
            if not all(isinstance(r, str) for r in regions):
                raise ConfigError(f"{name}: region codes must be strings")

    @property
    def escalation_level_seconds(self) -> tuple:
        return tuple(m * 60 for m in self.escalation_level_minutes)

    @classmethod
    def from_mapping(cls, mapping: dict | None) -> "Settings":
        """Build settings from a plain dict; unknown keys are a ConfigError."""
        mapping = dict(mapping or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigError(f"unknown setting(s): {', '.join(unknown)}")

        # YAML gives lists; the dataclass is frozen, so store tuples.
        for name in ("escalation_level_minutes", "geo_blocked_regions", "geo_allowed_regions"):
            if name in mapping:
                value = mapping[name]
                if isinstance(value, str):
                    value = [v for v in value.split(",") if v.strip()]
                if not isinstance(value, (list, tuple)):
                    raise ConfigError(f"{name}: expected a list, got {value!r}")
                mapping[name] = tuple(value)
        for name in ("geo_blocked_regions", "geo_allowed_regions"):
            if name in mapping:
                mapping[name] = tuple(str(r).strip().upper() for r in mapping[name])

        return cls(**mapping)


def load_settings(path: str | Path | None) -> Settings:
    """Load settings from a YAML file.  ``None`` means all defaults."""
    if path is None:
        return Settings()
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"{path.name}: invalid YAML ({e})") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name}: top level must be a mapping")
    # Allow the thresholds to live under a 'guard:' section.
    if "guard" in data and isinstance(data["guard"], dict):
        data = data["guard"]
    return Settings.from_mapping(data)
