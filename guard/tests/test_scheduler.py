"""Tests for the invocation modes: real-time runner, batch replay, periodic tasks."""

import threading

from guard.config import Settings
from guard.engine import DecisionEngine
from guard.models import Action, InvocationMode
from guard.scheduler import PeriodicTask, RealTimeRunner, replay
from guard.sinks import MemorySink

T0 = 1_700_006_400.0


def _request(ip, ts, **extra):
    r = {"timestamp": T0 + ts, "ip": ip, "endpoint": "/api/v1/notes",
         "user_agent": "Mozilla/5.0", "status_code": 200}
    r.update(extra)
    return r


def _engine(signatures=None, **overrides):
    return DecisionEngine.build(Settings(**overrides), sink=MemorySink(), signatures=signatures)


class TestRealTimeRunner:
    def test_results_in_input_order(self):
        runner = RealTimeRunner(_engine(), max_workers=4)
        try:
            requests = [_request(f"10.0.1.{i}", i * 0.1) for i in range(50)]
            decisions = runner.run(requests)
        finally:
            runner.shutdown()
        assert [d.ip for d in decisions] == [f"10.0.1.{i}" for i in range(50)]
        assert all(d.mode is InvocationMode.REAL_TIME for d in decisions)

    def test_concurrent_requests_respect_limit(self):
        # Only the rate limiter in play: no signatures, no flood or scraping signal.
        engine = _engine(signatures=[], burst_size=1000, rate_limit_per_minute=100,
                         ddos_requests_per_second=1000, behavioral_min_volume=1000)
        runner = RealTimeRunner(engine, max_workers=8)
        try:
            decisions = runner.run([_request("10.0.2.1", 0.001 * i) for i in range(150)])
        finally:
            runner.shutdown()
        allowed = sum(1 for d in decisions if d.action is Action.ALLOW)
        assert allowed == 100


class TestReplay:
    def test_sorts_by_timestamp(self):
        engine = _engine(rate_limit_per_minute=2)
        records = [_request("10.0.3.1", 3), _request("10.0.3.1", 1), _request("10.0.3.1", 2)]
        decisions = replay(engine, records)
        # The two earliest pass; the latest record is the one denied.
        assert [d.action for d in decisions] == [Action.ALLOW, Action.ALLOW, Action.DENY]

    def test_sweeps_and_ticks_as_time_passes(self):
        engine = _engine()
        ticks = []
        records = [_request("10.0.3.2", 0, query="id=1' OR '1'='1")]
        records += [_request("10.0.3.3", 30 * i) for i in range(1, 40)]
        replay(engine, records, tick=ticks.append)
        # Interval is 60 s of record time; the 15-minute block has been swept.
        assert len(ticks) >= 15
        assert ticks == sorted(ticks)
        assert engine.registry.record("10.0.3.2").list_type is None

    def test_sweep_disabled(self):
        engine = _engine()
        ticks = []
        records = [_request("10.0.3.2", 0, query="id=1' OR '1'='1"),
                   _request("10.0.3.3", 2000)]
        replay(engine, records, sweep=False, tick=ticks.append)
        assert ticks == []
        assert engine.registry.record("10.0.3.2").list_type is not None

    def test_malformed_records_sort_first_and_are_denied(self):
        engine = _engine()
        decisions = replay(engine, [_request("10.0.3.4", 5), {"ip": "10.0.3.5", "timestamp": "x"}])
        assert decisions[0].reason == "malformed_record"
        assert decisions[1].action is Action.ALLOW


class TestPeriodicTask:
    def test_run_once_passes_clock(self):
        seen = []
        task = PeriodicTask("t", 60, seen.append, clock=lambda: T0)
        task.run_once()
        assert seen == [T0]

    def test_exceptions_are_logged_not_raised(self, caplog):
        def broken(now):
            raise RuntimeError("boom")

        PeriodicTask("broken", 60, broken).run_once()
        assert "Periodic task broken failed" in caplog.text

    def test_runs_until_stopped(self):
        fired = threading.Event()
        task = PeriodicTask("fast", 0.01, lambda now: fired.set()).start()
        try:
            assert fired.wait(2)
        finally:
            task.stop(timeout=2)
        assert not task._thread.is_alive()
