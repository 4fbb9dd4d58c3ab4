"""Notification channels and the dispatcher that drives them.

A channel only delivers: ``notify(alert, recipients)`` either returns or
raises.  Retrying is the dispatcher's job, per channel, so a slow SMTP
relay never holds up the chat webhook and every attempt ends up on the
alert's delivery log.
"""

import logging
import smtplib
from email.message import EmailMessage

import requests

from alerts.models import AlertLevel, DeliveryAttempt
from guard.retry import RetryPolicy, TransientError, failure

logger = logging.getLogger(__name__)

_SLACK_COLORS = {
    AlertLevel.CRITICAL: "danger",
    AlertLevel.WARNING: "warning",
    AlertLevel.INFO: "good",
}


def subject_line(alert, kind: str = "alert") -> str:
    prefix = f"[{alert.level.value.upper()}]"
    if kind == "escalation":
        prefix += f"[ESCALATION L{alert.escalation_level}]"
    elif kind == "summary":
        prefix += "[SUMMARY]"
    return f"{prefix} {alert.component} - {alert.alert_type}"


def body_text(alert) -> str:
    lines = [
        f"Component: {alert.component}",
        f"Alert Level: {alert.level.value}",
        f"Alert Type: {alert.alert_type}",
        f"Message: {alert.message}",
        f"Occurrences: {alert.occurrences}",
        f"Escalation Level: {alert.escalation_level}",
        f"Alert ID: {alert.id}",
    ]
    return "\n".join(lines)


class Channel:
    """Delivery channel.  Raise TransientError for failures worth retrying."""

    name = "channel"

    def notify(self, alert, recipients: tuple, kind: str = "alert") -> None:
        raise NotImplementedError


class LogChannel(Channel):
    """Writes notifications to the log.  The fallback when nothing else is configured."""

    name = "log"

    def notify(self, alert, recipients, kind="alert"):
        logger.warning("%s -> %s: %s", subject_line(alert, kind),
                       ", ".join(recipients) or "(no recipients)", alert.message)


class EmailChannel(Channel):
    name = "email"

    def __init__(self, host: str, sender: str, port: int = 587,
                 username: str | None = None, password: str | None = None,
                 use_tls: bool = True, timeout: float = 30):
        self.host = host
        self.sender = sender
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _connect(self):
        if self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            server.starttls()
        return server

    def notify(self, alert, recipients, kind="alert"):
        if not recipients:
            return
        msg = EmailMessage()
        msg["Subject"] = subject_line(alert, kind)
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg.set_content(body_text(alert))

        try:
            server = self._connect()
            try:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg, self.sender, list(recipients))
            finally:
                server.quit()
        except smtplib.SMTPAuthenticationError:
            raise
        except (smtplib.SMTPException, OSError) as e:
            raise TransientError(f"SMTP delivery to {self.host} failed: {e}") from e


class WebhookChannel(Channel):
    """Slack-compatible incoming webhook."""

    name = "webhook"

    def __init__(self, url: str, session: requests.Session | None = None,
                 timeout: float = 10):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def payload(self, alert, recipients, kind="alert") -> dict:
        text = subject_line(alert, kind)
        if recipients:
            text += f" (notify: {', '.join(recipients)})"
        return {
            "text": text,
            "attachments": [{
                "color": _SLACK_COLORS.get(alert.level, "#36a64f"),
                "fields": [
                    {"title": "Component", "value": alert.component, "short": True},
                    {"title": "Level", "value": alert.level.value, "short": True},
                    {"title": "Type", "value": alert.alert_type, "short": True},
                    {"title": "Occurrences", "value": str(alert.occurrences), "short": True},
                    {"title": "Message", "value": alert.message, "short": False},
                ],
            }],
        }

    def notify(self, alert, recipients, kind="alert"):
        try:
            response = self.session.post(self.url, json=self.payload(alert, recipients, kind),
                                         timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientError(f"webhook post failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"webhook returned {response.status_code}")
        response.raise_for_status()


class Dispatcher:
    """Fans a notification out to every channel with per-channel retries."""

    def __init__(self, channels: list[Channel], policy: RetryPolicy | None = None):
        self.channels = list(channels)
        self.policy = policy or RetryPolicy(attempts=3, base_delay=0.5, max_delay=30.0)

    def dispatch(self, alert, recipients: tuple, now: float,
                 kind: str = "alert") -> list[DeliveryAttempt]:
        """Deliver to every channel.  Never raises; returns every attempt made."""
        attempts = []
        for channel in self.channels:
            attempts.extend(self._deliver(channel, alert, tuple(recipients), now, kind))
        return attempts

    def _deliver(self, channel, alert, recipients, now, kind):
        attempts = []

        def failed(details):
            attempts.append(DeliveryAttempt(channel.name, recipients, details["tries"], False,
                                            now, kind, str(failure(details))))

        def retrying(details):
            failed(details)
            logger.warning("%s delivery of alert %s failed (attempt %d): %s",
                           channel.name, alert.id, details["tries"], failure(details))

        def giving_up(details):
            failed(details)
            logger.error("Giving up on %s delivery of alert %s after %d attempts: %s",
                         channel.name, alert.id, details["tries"], failure(details))

        @self.policy.on_exception(TransientError, on_backoff=retrying, on_giveup=giving_up,
                                  raise_on_giveup=False)
        def send():
            channel.notify(alert, recipients, kind)
            attempts.append(DeliveryAttempt(channel.name, recipients, len(attempts) + 1,
                                            True, now, kind))

        try:
            send()
        except Exception as e:
            logger.exception("%s channel failed delivering alert %s", channel.name, alert.id)
            attempts.append(DeliveryAttempt(channel.name, recipients, len(attempts) + 1,
                                            False, now, kind, repr(e)))
        return attempts
