"""Tests for backoff-driven retries and the retrying sink wrapper."""

import time

import pytest

from guard.models import EventType, SecurityEvent
from guard.retry import NO_RETRY, RetryPolicy, TransientError, retry_call
from guard.sinks import MemorySink, RetryingSink

T0 = 1_700_006_400.0


class _Flaky:
    def __init__(self, failures, error=TransientError("store unreachable")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class _FlakySink(MemorySink):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def record_event(self, event):
        if self.failures:
            self.failures -= 1
            raise TransientError("sink down")
        super().record_event(event)


class TestRetryCall:
    @pytest.fixture(autouse=True)
    def _no_sleep(self, monkeypatch):
        self.sleeps = []
        monkeypatch.setattr(time, "sleep", self.sleeps.append)

    def test_succeeds_after_transient_failures(self):
        fn = _Flaky(failures=2)
        assert retry_call(fn, "ok", policy=RetryPolicy(attempts=3)) == "ok"
        assert fn.calls == 3
        assert self.sleeps == pytest.approx([0.05, 0.1])

    def test_waits_are_capped(self):
        policy = RetryPolicy(attempts=5, base_delay=1.0, max_delay=3.0)
        retry_call(_Flaky(failures=4), "ok", policy=policy)
        assert self.sleeps == [1.0, 2.0, 3.0, 3.0]

    def test_last_error_reraised(self):
        fn = _Flaky(failures=10)
        with pytest.raises(TransientError):
            retry_call(fn, "ok", policy=RetryPolicy(attempts=3))
        assert fn.calls == 3

    def test_other_errors_not_retried(self):
        fn = _Flaky(failures=10, error=KeyError("x"))
        with pytest.raises(KeyError):
            retry_call(fn, "ok", policy=RetryPolicy(attempts=3))
        assert fn.calls == 1
        assert self.sleeps == []

    def test_no_retry_policy(self):
        fn = _Flaky(failures=1)
        with pytest.raises(TransientError):
            retry_call(fn, "ok", policy=NO_RETRY)
        assert self.sleeps == []

    def test_retries_logged(self, caplog):
        retry_call(_Flaky(failures=1), "ok", policy=RetryPolicy(attempts=2))
        assert "failed (attempt 1): store unreachable" in caplog.text


class TestRetryingSink:
    @pytest.fixture(autouse=True)
    def _no_sleep(self, monkeypatch):
        monkeypatch.setattr(time, "sleep", lambda s: None)

    def _event(self):
        return SecurityEvent(EventType.BLOCK, "10.0.0.9", T0)

    def test_event_written_after_retry(self):
        inner = _FlakySink(failures=2)
        RetryingSink(inner, RetryPolicy(attempts=3)).record_event(self._event())
        assert len(inner.events()) == 1

    def test_gives_up(self):
        sink = RetryingSink(_FlakySink(failures=5), RetryPolicy(attempts=2))
        with pytest.raises(TransientError):
            sink.record_event(self._event())

    def test_read_helpers_pass_through(self):
        inner = MemorySink()
        sink = RetryingSink(inner)
        sink.record_event(self._event())
        assert sink.events() == inner.events()
