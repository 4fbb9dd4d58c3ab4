"""Tests for AbuseDetector: pattern, anomaly and behavioral scoring, degraded mode."""

import threading

import pytest

from guard.abuse.baseline import BaselineProfile, BaselineStore, InMemoryBaselineStore
from guard.abuse.detector import AbuseDetector
from guard.abuse.injection import SqlInjection
from guard.abuse.rapid_requests import RapidRequests
from guard.abuse.scraper_agent import ScraperUserAgent
from guard.config import Settings
from guard.models import RequestRecord

T0 = 1_700_006_400.0
IP = "203.0.113.40"
BROWSER = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/126.0 Safari/537.36"


def _req(ts, endpoint="/api/v1/notes", user_agent=BROWSER, query="", status_code=200,
         ip=IP):
    return RequestRecord(timestamp=T0 + ts, ip=ip, endpoint=endpoint, query=query,
                         user_agent=user_agent, status_code=status_code)


def _detector(signatures=(), baselines=None, **overrides):
    return AbuseDetector(Settings(**overrides), baselines=baselines,
                         signatures=list(signatures))


class _SlowStore(BaselineStore):
    """Remote baseline store that never answers in time."""

    def __init__(self):
        self.release = threading.Event()

    def get(self, ip):
        self.release.wait(5)
        return BaselineProfile(ip, 1.0)


class _BrokenStore(BaselineStore):
    def get(self, ip):
        raise ConnectionError("baseline db down")


class TestPatternMatching:
    def test_injection_flags_ip(self):
        detector = _detector([SqlInjection()])
        detector.observe(_req(0, query="id=1' OR '1'='1"))
        report = detector.analyze(IP, T0)
        assert report.abusive
        assert report.triggered == ["pattern"]
        assert report.signatures == ["sql_injection"]
        assert report.category == "sql_injection"
        assert report.evidence["sql_injection"]["category"] == "injection"

    def test_clean_traffic_not_flagged(self):
        detector = _detector([SqlInjection(), ScraperUserAgent()])
        for i in range(20):
            detector.observe(_req(i))
        report = detector.analyze(IP, T0 + 19)
        assert not report.abusive
        assert report.category == ""

    def test_matches_outside_signature_window_ignored(self):
        detector = _detector([SqlInjection()])
        detector.observe(_req(0, query="id=1' OR '1'='1"))
        assert not detector.analyze(IP, T0 + 3601).abusive

    def test_rapid_requests_count_only_rejected(self):
        detector = _detector([RapidRequests()])
        for i in range(20):
            detector.observe(_req(i * 0.4))
        assert not detector.analyze(IP, T0 + 7.6).abusive

        for i in range(10):
            detector.observe(_req(8 + i * 0.1), rejected=True)
        report = detector.analyze(IP, T0 + 8.9)
        assert report.signatures == ["rapid_requests"]

    def test_forget_clears_history(self):
        detector = _detector([SqlInjection()])
        detector.observe(_req(0, query="id=1' OR '1'='1"))
        detector.forget(IP)
        assert not detector.analyze(IP, T0).abusive

    def test_ips_are_independent(self):
        detector = _detector([SqlInjection()])
        detector.observe(_req(0, query="id=1' OR '1'='1"))
        assert not detector.analyze("203.0.113.41", T0).abusive


class TestAnomalyScore:
    def setup_method(self):
        self.baselines = InMemoryBaselineStore()
        self.baselines.put(BaselineProfile(IP, hourly_mean=10.0, hours_observed=168))

    def test_score_is_ratio_to_baseline(self):
        detector = _detector(baselines=self.baselines)
        for i in range(20):
            detector.observe(_req(i * 10))
        report = detector.analyze(IP, T0 + 190)
        # 20 requests against a mean of 10/h: 25 x 2.0
        assert report.anomaly_score == pytest.approx(50.0)
        assert "anomaly" not in report.triggered

    def test_score_triggers_above_threshold(self):
        detector = _detector(baselines=self.baselines)
        for i in range(30):
            detector.observe(_req(i * 10))
        report = detector.analyze(IP, T0 + 290)
        assert report.anomaly_score == pytest.approx(75.0)
        assert report.triggered == ["anomaly"]
        assert report.evidence["anomaly"]["current_requests"] == 30

    def test_score_is_clamped(self):
        detector = _detector(baselines=self.baselines)
        for i in range(100):
            detector.observe(_req(i * 5))
        assert detector.analyze(IP, T0 + 495).anomaly_score == 100.0

    def test_no_baseline_scores_zero(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(50):
            detector.observe(_req(i * 10))
        assert detector.analyze(IP, T0 + 490).anomaly_score == 0.0

    def test_too_few_requests_scores_zero(self):
        detector = _detector(baselines=self.baselines)
        self.baselines.put(BaselineProfile(IP, hourly_mean=0.5))
        for i in range(9):
            detector.observe(_req(i * 10))
        assert detector.analyze(IP, T0 + 80).anomaly_score == 0.0

    def test_rebuild_from_history(self):
        store = InMemoryBaselineStore()
        records = [_req(-86400 + i * 60) for i in range(168)]
        assert store.rebuild(records, T0, days=7) == 1
        assert store.get(IP).hourly_mean == pytest.approx(1.0)


class TestBehavioralScore:
    def test_scraping_low_endpoint_diversity(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(250):
            detector.observe(_req(i, endpoint=f"/api/v1/notes/{i % 5}"))
        report = detector.analyze(IP, T0 + 249)
        # 250 requests over 5 endpoints: 100 x (1 - 5/250)
        assert report.behavioral_score == pytest.approx(98.0)
        assert report.triggered == ["behavioral"]
        assert report.evidence["behavioral"]["scraping"] == 98.0

    def test_steady_poller_under_limits_is_not_scraping(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        # One endpoint every 1.5 s: 40 a minute against a limit of 60.
        for i in range(300):
            detector.observe(_req(i * 1.5, endpoint="/api/v1/status"))
        report = detector.analyze(IP, T0 + 299 * 1.5)
        assert report.evidence["behavioral"]["scraping"] == 0.0
        assert "behavioral" not in report.triggered

    def test_single_endpoint_at_the_minute_limit_is_scraping(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(300):
            detector.observe(_req(i, endpoint="/api/v1/status"))
        report = detector.analyze(IP, T0 + 299)
        assert report.evidence["behavioral"]["scraping"] == pytest.approx(99.67)
        assert report.triggered == ["behavioral"]

    def test_scraping_volume_follows_rate_limit(self):
        detector = _detector(baselines=InMemoryBaselineStore(), rate_limit_per_minute=30)
        for i in range(150):
            detector.observe(_req(i * 2, endpoint="/api/v1/status"))
        report = detector.analyze(IP, T0 + 298)
        # 0.8 x 30 a minute x 5 minutes = 120 requests
        assert report.evidence["behavioral"]["scraping"] > 70

    def test_endpoint_enumeration(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(21):
            detector.observe(_req(i, endpoint=f"/api/v1/users/{i}"))
        report = detector.analyze(IP, T0 + 20)
        assert report.behavioral_score == pytest.approx(21 * 70 / 20)
        assert "behavioral" in report.triggered

    def test_user_agent_rotation(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(11):
            detector.observe(_req(i * 60, user_agent=f"agent-{i}"))
        report = detector.analyze(IP, T0 + 600)
        assert report.behavioral_score == pytest.approx(77.0)
        assert report.evidence["behavioral"]["distinct_user_agents"] == 11

    def test_ordinary_client_stays_low(self):
        detector = _detector(baselines=InMemoryBaselineStore())
        for i in range(60):
            detector.observe(_req(i * 0.5))
        report = detector.analyze(IP, T0 + 29.5)
        assert report.behavioral_score < 70
        assert not report.abusive


class TestDegradedMode:
    def test_slow_baseline_store_falls_back_to_patterns(self):
        store = _SlowStore()
        detector = _detector([SqlInjection()], baselines=store,
                             baseline_timeout_seconds=0.05)
        try:
            for i in range(30):
                detector.observe(_req(i, endpoint=f"/api/v1/users/{i}"))
            detector.observe(_req(30, query="id=1' OR '1'='1"))
            report = detector.analyze(IP, T0 + 30)
        finally:
            store.release.set()
            detector.close()
        assert report.degraded
        assert report.triggered == ["pattern"]
        assert report.anomaly_score == 0.0
        assert report.behavioral_score == 0.0

    def test_failing_baseline_store_degrades(self):
        detector = _detector(baselines=_BrokenStore())
        try:
            detector.observe(_req(0))
            report = detector.analyze(IP, T0)
        finally:
            detector.close()
        assert report.degraded
        assert not report.abusive


class TestPurge:
    def test_idle_history_dropped(self):
        detector = _detector([SqlInjection()])
        detector.observe(_req(0))
        assert detector.purge_idle(T0 + 100) == 0
        assert detector.purge_idle(T0 + 3601) == 1
