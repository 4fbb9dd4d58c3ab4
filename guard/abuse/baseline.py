"""Per-IP traffic baselines for anomaly scoring.

A baseline is the IP's average hourly request count over a lookback
period.  Production deployments keep baselines in an external store that
a nightly job rebuilds; the detector reads them through ``BaselineStore``
with a timeout so a slow store degrades scoring instead of stalling the
request path.
"""

import threading
from collections import Counter
from dataclasses import dataclass


@dataclass(frozen=True)
class BaselineProfile:
    ip: str
    hourly_mean: float
    hours_observed: int = 0
    updated_at: float = 0.0


class BaselineStore:
    """Read side of the baseline store."""

    # A remote store is queried off-thread with a timeout; a local one is
    # called inline.
    remote = True

    def get(self, ip: str) -> BaselineProfile | None:
        raise NotImplementedError


class InMemoryBaselineStore(BaselineStore):
    remote = False

    def __init__(self):
        self._profiles: dict[str, BaselineProfile] = {}
        self._lock = threading.Lock()

    def get(self, ip):
        with self._lock:
            return self._profiles.get(ip)

    def put(self, profile: BaselineProfile) -> None:
        with self._lock:
            self._profiles[profile.ip] = profile

    def rebuild(self, records, now: float, days: int = 7) -> int:
        """Recompute every baseline from *records* in ``[now - days, now)``.

        Returns the number of profiles written.
        """
        start = now - days * 86400
        hours = days * 24
        counts = Counter(r.ip for r in records if start <= r.timestamp < now)
        profiles = {
            ip: BaselineProfile(ip, n / hours, hours_observed=hours, updated_at=now)
            for ip, n in counts.items()
        }
        with self._lock:
            self._profiles.update(profiles)
        return len(profiles)
