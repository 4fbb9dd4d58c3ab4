"""Abuse detector: scores one IP's recent traffic with three signals.

* pattern:    built-in and YAML signatures over the IP's request history
* anomaly:    requests in the last hour against the IP's hourly baseline
* behavioral: scraping, endpoint enumeration and user-agent rotation

Pure business logic.  The decision engine feeds request records in with
``observe`` and calls ``analyze`` for the verdict; blocking is the
engine's job.

State: dict[ip, SlidingWindow[(RequestRecord, rejected)]]
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field

from guard.abuse import Signature, builtin_signatures
from guard.abuse.loader import load_signatures
from guard.store import KeyedLocks
from guard.windows import SlidingWindow

logger = logging.getLogger(__name__)

# Per-IP history cap; enough to see the largest volume signature fire.
_HISTORY_LIMIT = 5000


@dataclass
class AbuseReport:
    ip: str
    pattern_matches: int = 0
    anomaly_score: float = 0.0
    behavioral_score: float = 0.0
    triggered: list = field(default_factory=list)
    signatures: list = field(default_factory=list)
    evidence: dict = field(default_factory=dict)
    degraded: bool = False

    @property
    def abusive(self) -> bool:
        return bool(self.triggered)

    @property
    def category(self) -> str:
        """The most specific label for the block reason."""
        if self.signatures:
            return self.signatures[0]
        return self.triggered[0] if self.triggered else ""

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "pattern_matches": self.pattern_matches,
            "anomaly_score": round(self.anomaly_score, 2),
            "behavioral_score": round(self.behavioral_score, 2),
            "triggered": list(self.triggered),
            "signatures": list(self.signatures),
            "evidence": self.evidence,
            "degraded": self.degraded,
        }


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


class AbuseDetector:

    def __init__(self, settings, baselines=None, signatures: list[Signature] | None = None,
                 executor: ThreadPoolExecutor | None = None):
        self.settings = settings
        self.baselines = baselines
        if signatures is None:
            signatures = builtin_signatures() + load_signatures()
        self.signatures = signatures
        self._executor = executor
        self._own_executor = executor is None

        self._max_age = max(
            [settings.abuse_window_seconds, settings.behavioral_window_seconds]
            + [s.window_seconds for s in self.signatures]
        )
        self._locks = KeyedLocks()
        self._history: dict[str, SlidingWindow] = {}
        self._create = threading.Lock()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _window(self, ip: str) -> SlidingWindow:
        with self._create:
            window = self._history.get(ip)
            if window is None:
                window = SlidingWindow(self._max_age, maxlen=_HISTORY_LIMIT)
                self._history[ip] = window
            return window

    def observe(self, record, rejected: bool = False) -> None:
        """Add a request to the IP's history; *rejected* marks one the guard refused."""
        with self._locks.hold(record.ip):
            self._window(record.ip).add(record.timestamp, (record, rejected))

    def forget(self, ip: str) -> None:
        """Drop an IP's history, so it must re-accumulate before firing again."""
        with self._locks.hold(ip), self._create:
            self._history.pop(ip, None)

    def purge_idle(self, now: float) -> int:
        with self._create:
            candidates = list(self._history)
        purged = 0
        for ip in candidates:
            with self._locks.hold(ip), self._create:
                window = self._history.get(ip)
                if window is not None and window.count(now) == 0:
                    del self._history[ip]
                    purged += 1
        return purged

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, ip: str, now: float, window_seconds: float | None = None) -> AbuseReport:
        with self._locks.hold(ip):
            window = self._history.get(ip)
            entries = window.items(now, window_seconds) if window is not None else []
        records = [r for r, _ in entries]
        rejected = [r for r, refused in entries if refused]

        report = AbuseReport(ip=ip)
        self._match_signatures(report, records, rejected, now)

        baseline, degraded = self._baseline(ip)
        if degraded:
            # Pattern-only until the baseline store answers again.
            report.degraded = True
        else:
            hour = window_seconds or self.settings.abuse_window_seconds
            current = sum(1 for r in records if r.timestamp >= now - hour)
            report.anomaly_score = self._anomaly_score(current, baseline)
            report.behavioral_score, behavior = self._behavioral_score(records, now)
            if report.anomaly_score > self.settings.abuse_anomaly_threshold:
                report.triggered.append("anomaly")
                report.evidence["anomaly"] = {
                    "current_requests": current,
                    "baseline_hourly_mean": round(baseline.hourly_mean, 2),
                    "score": round(report.anomaly_score, 2),
                }
            if report.behavioral_score > self.settings.abuse_behavioral_threshold:
                report.triggered.append("behavioral")
                report.evidence["behavioral"] = behavior

        return report

    def _match_signatures(self, report: AbuseReport, records: list, rejected: list,
                          now: float) -> None:
        for sig in self.signatures:
            cutoff = now - sig.window_seconds
            pool = rejected if sig.rejected_only else records
            matched = [r for r in pool if r.timestamp >= cutoff and sig.match(r)]
            if not matched or not sig.trigger(matched):
                continue
            report.pattern_matches += 1
            report.signatures.append(sig.id)
            report.evidence[sig.id] = {"category": sig.category, **sig.evidence(matched)}
        if report.pattern_matches:
            report.triggered.insert(0, "pattern")

    def _baseline(self, ip: str):
        """Return (profile or None, degraded)."""
        if self.baselines is None:
            return None, False
        try:
            if not self.baselines.remote:
                return self.baselines.get(ip), False
            future = self._pool().submit(self.baselines.get, ip)
            return future.result(timeout=self.settings.baseline_timeout_seconds), False
        except FuturesTimeout:
            logger.warning("baseline lookup for %s timed out after %.2fs",
                           ip, self.settings.baseline_timeout_seconds)
        except Exception as e:
            logger.warning("baseline lookup for %s failed: %s", ip, e)
        return None, True

    def _anomaly_score(self, current: int, baseline) -> float:
        if baseline is None or baseline.hourly_mean <= 0:
            return 0.0
        if current < self.settings.anomaly_min_requests:
            return 0.0
        return _clamp(self.settings.anomaly_ratio_scale * current / baseline.hourly_mean)

    def _scraping_volume(self) -> float:
        """Requests per behavioral window that count as high volume."""
        s = self.settings
        paced = s.rate_limit_per_minute * s.behavioral_window_seconds / 60
        return max(s.behavioral_min_volume, s.scraping_volume_fraction * paced)

    def _behavioral_score(self, records: list, now: float):
        s = self.settings
        threshold = s.abuse_behavioral_threshold

        recent = [r for r in records if r.timestamp >= now - s.behavioral_window_seconds]
        volume = len(recent)
        endpoints = {r.endpoint for r in recent}
        agents = {r.user_agent for r in records
                  if r.timestamp >= now - s.abuse_window_seconds and r.user_agent}

        scraping = 0.0
        if volume >= self._scraping_volume():
            scraping = _clamp(100.0 * (1 - len(endpoints) / volume))
        enumeration = _clamp(len(endpoints) * threshold / s.endpoint_diversity_limit)
        botnet = _clamp(len(agents) * threshold / s.user_agent_diversity_limit)

        evidence = {
            "requests": volume,
            "distinct_endpoints": len(endpoints),
            "distinct_user_agents": len(agents),
            "scraping": round(scraping, 2),
            "enumeration": round(enumeration, 2),
            "botnet": round(botnet, 2),
        }
        return max(scraping, enumeration, botnet), evidence

    def _pool(self) -> ThreadPoolExecutor:
        with self._create:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=4, thread_name_prefix="baseline")
            return self._executor

    def close(self) -> None:
        if self._own_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
