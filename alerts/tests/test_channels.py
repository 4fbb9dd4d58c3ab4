"""Tests for notification channels and the retrying dispatcher."""

import smtplib
import time
from unittest.mock import MagicMock

import pytest
import requests

from alerts.channels import (Channel, Dispatcher, EmailChannel, LogChannel, WebhookChannel,
                             body_text, subject_line)
from alerts.models import Alert, AlertLevel
from guard.retry import RetryPolicy, TransientError

T0 = 1_700_006_400.0


def _alert(level=AlertLevel.CRITICAL):
    return Alert("security", level, "ddos_attack", "DDoS attack detected from 10.0.0.9",
                 created_at=T0)


class _Flaky(Channel):
    name = "flaky"

    def __init__(self, failures, error=TransientError("try later")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def notify(self, alert, recipients, kind="alert"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error


def _response(status):
    response = MagicMock(status_code=status)
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return response


class TestFormatting:
    def test_subject_lines(self):
        alert = _alert()
        assert subject_line(alert) == "[CRITICAL] security - ddos_attack"
        alert.escalation_level = 2
        assert subject_line(alert, "escalation") == (
            "[CRITICAL][ESCALATION L2] security - ddos_attack")
        assert subject_line(alert, "summary").startswith("[CRITICAL][SUMMARY]")

    def test_body(self):
        body = body_text(_alert())
        assert "Message: DDoS attack detected from 10.0.0.9" in body
        assert "Occurrences: 1" in body


class TestEmailChannel:
    def setup_method(self):
        self.server = MagicMock()

    def test_sends_with_starttls(self, monkeypatch):
        smtp = MagicMock(return_value=self.server)
        monkeypatch.setattr(smtplib, "SMTP", smtp)
        channel = EmailChannel("smtp.example.com", "guard@example.com",
                               username="guard", password="secret")
        channel.notify(_alert(), ("oncall@example.com",))

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        self.server.starttls.assert_called_once()
        self.server.login.assert_called_once_with("guard", "secret")
        msg, sender, to = self.server.send_message.call_args.args
        assert msg["Subject"] == "[CRITICAL] security - ddos_attack"
        assert to == ["oncall@example.com"]
        self.server.quit.assert_called_once()

    def test_implicit_tls_port(self, monkeypatch):
        smtp_ssl = MagicMock(return_value=self.server)
        monkeypatch.setattr(smtplib, "SMTP_SSL", smtp_ssl)
        EmailChannel("smtp.example.com", "guard@example.com", port=465).notify(
            _alert(), ("a@example.com",))
        smtp_ssl.assert_called_once()
        self.server.starttls.assert_not_called()
        self.server.login.assert_not_called()

    def test_no_recipients_sends_nothing(self, monkeypatch):
        smtp = MagicMock(return_value=self.server)
        monkeypatch.setattr(smtplib, "SMTP", smtp)
        EmailChannel("smtp.example.com", "guard@example.com").notify(_alert(), ())
        smtp.assert_not_called()

    def test_smtp_failure_is_transient(self, monkeypatch):
        self.server.send_message.side_effect = smtplib.SMTPServerDisconnected("gone")
        monkeypatch.setattr(smtplib, "SMTP", MagicMock(return_value=self.server))
        with pytest.raises(TransientError):
            EmailChannel("smtp.example.com", "guard@example.com").notify(
                _alert(), ("a@example.com",))
        self.server.quit.assert_called_once()

    def test_connection_refused_is_transient(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", MagicMock(side_effect=ConnectionRefusedError()))
        with pytest.raises(TransientError):
            EmailChannel("smtp.example.com", "guard@example.com").notify(
                _alert(), ("a@example.com",))

    def test_auth_failure_is_not_transient(self, monkeypatch):
        self.server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        monkeypatch.setattr(smtplib, "SMTP", MagicMock(return_value=self.server))
        channel = EmailChannel("smtp.example.com", "guard@example.com",
                               username="guard", password="wrong")
        with pytest.raises(smtplib.SMTPAuthenticationError):
            channel.notify(_alert(), ("a@example.com",))


class TestWebhookChannel:
    def setup_method(self):
        self.session = MagicMock()
        self.channel = WebhookChannel("https://hooks.example.com/T000", session=self.session)

    def test_posts_payload(self):
        self.session.post.return_value = _response(200)
        self.channel.notify(_alert(), ("oncall@example.com",))
        args, kwargs = self.session.post.call_args
        assert args == ("https://hooks.example.com/T000",)
        assert kwargs["timeout"] == 10
        payload = kwargs["json"]
        assert payload["text"] == "[CRITICAL] security - ddos_attack (notify: oncall@example.com)"
        assert payload["attachments"][0]["color"] == "danger"

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_errors_are_transient(self, status):
        self.session.post.return_value = _response(status)
        with pytest.raises(TransientError):
            self.channel.notify(_alert(), ())

    def test_client_error_raises(self):
        self.session.post.return_value = _response(404)
        with pytest.raises(requests.HTTPError):
            self.channel.notify(_alert(), ())

    def test_network_error_is_transient(self):
        self.session.post.side_effect = requests.ConnectionError("reset")
        with pytest.raises(TransientError):
            self.channel.notify(_alert(), ())


class TestDispatcher:
    @pytest.fixture(autouse=True)
    def _no_sleep(self, monkeypatch):
        self.sleeps = []
        monkeypatch.setattr(time, "sleep", self.sleeps.append)

    def setup_method(self):
        self.policy = RetryPolicy(attempts=3, base_delay=0.5, max_delay=30.0)

    def _dispatcher(self, *channels):
        return Dispatcher(list(channels), self.policy)

    def test_retries_until_delivered(self):
        flaky = _Flaky(failures=2)
        attempts = self._dispatcher(flaky).dispatch(_alert(), ("a@example.com",), T0)
        assert [(a.attempt, a.ok) for a in attempts] == [(1, False), (2, False), (3, True)]
        assert self.sleeps == [0.5, 1.0]
        assert attempts[0].error == "try later"

    def test_gives_up_after_policy_attempts(self, caplog):
        attempts = self._dispatcher(_Flaky(failures=10)).dispatch(_alert(), (), T0)
        assert len(attempts) == 3
        assert not any(a.ok for a in attempts)
        assert "Giving up on flaky delivery" in caplog.text

    def test_non_transient_failure_not_retried(self):
        broken = _Flaky(failures=10, error=ValueError("bad template"))
        attempts = self._dispatcher(broken).dispatch(_alert(), (), T0)
        assert broken.calls == 1
        assert attempts[0].error == "ValueError('bad template')"
        assert self.sleeps == []

    def test_one_failing_channel_does_not_stop_others(self):
        broken = _Flaky(failures=10, error=RuntimeError("down"))
        healthy = _Flaky(failures=0)
        healthy.name = "healthy"
        attempts = self._dispatcher(broken, healthy).dispatch(
            _alert(), ("a@example.com",), T0, kind="escalation")
        assert healthy.calls == 1
        assert [(a.channel, a.ok, a.kind) for a in attempts] == [
            ("flaky", False, "escalation"), ("healthy", True, "escalation")]

    def test_log_channel(self, caplog):
        attempts = self._dispatcher(LogChannel()).dispatch(_alert(), ("a@example.com",), T0)
        assert attempts[0].ok
        assert "[CRITICAL] security - ddos_attack -> a@example.com" in caplog.text
