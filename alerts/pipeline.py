"""Alert pipeline: dedup, aggregation, escalation, resolution, dispatch.

Per alert:

    active --(same fingerprint inside dedup window)--> deduplicated into itself
    active --(component already notified this window)--> held for the summary
    active --(unacknowledged past level timer)--> escalation_level += 1
    active | acknowledged --> resolved

Acknowledging or resolving cancels the alert's escalation timers.  The
pipeline never sleeps on its lock: state changes happen under the lock,
notifications go out after it is released.  Given an executor, they go out
on its worker threads and raising an alert never waits on a channel.
"""

import logging
import threading
from dataclasses import dataclass, field

from alerts.events import COMPONENT, alert_for_event, blocked_message
from alerts.models import Alert, AlertLevel, AlertStatus, fingerprint
from alerts.timers import TimerQueue
from guard.models import EventType
from guard.retry import TransientError

logger = logging.getLogger(__name__)

_COMPARISONS = {
    "gt": lambda v, t: v > t,
    "gte": lambda v, t: v >= t,
    "lt": lambda v, t: v < t,
    "lte": lambda v, t: v <= t,
}


def _log_delivery_failure(future) -> None:
    error = future.exception()
    if error is not None:
        logger.error("Alert delivery failed: %r", error)


@dataclass
class _AggregationWindow:
    component: str
    start: float
    end: float
    held: list = field(default_factory=list)


class AlertPipeline:

    def __init__(self, settings, router, dispatcher, sink=None, timers: TimerQueue | None = None,
                 executor=None):
        self.settings = settings
        self.router = router
        self.dispatcher = dispatcher
        self.sink = sink
        self.timers = timers if timers is not None else TimerQueue()
        self.executor = executor

        self._lock = threading.RLock()
        self._alerts: dict[str, Alert] = {}
        self._open_by_fp: dict[str, str] = {}
        self._windows: dict[str, _AggregationWindow] = {}

    # ------------------------------------------------------------------
    # Raising
    # ------------------------------------------------------------------

    def raise_alert(self, component: str, level, alert_type: str, message: str,
                    now: float, metadata: dict | None = None) -> Alert:
        """Create an alert, or fold a repeat into the open one with the same fingerprint."""
        level = AlertLevel.parse(level)
        fp = fingerprint(component, alert_type, message)
        notify = False
        flush = None

        with self._lock:
            existing = self._duplicate_of(fp, now)
            if existing is not None:
                existing.last_seen_at = now
                existing.occurrences += 1
                if metadata:
                    existing.metadata.update(metadata)
                alert = existing
            else:
                alert = Alert(component, level, alert_type, message, created_at=now,
                              fingerprint=fp, metadata=dict(metadata or {}))
                self._alerts[alert.id] = alert
                self._open_by_fp[fp] = alert.id
                self._schedule_escalation(alert)
                notify, flush = self._aggregate(alert, now)

        if existing is not None:
            logger.debug("Alert deduplicated: %s/%s (%d occurrences)",
                         component, alert_type, alert.occurrences)
        else:
            logger.info("Alert raised: [%s] %s/%s: %s", level.value, component,
                        alert_type, message)
        if flush is not None:
            self._send_summary(flush, now)
        if notify:
            self._notify(alert, self.router.route(component, level, alert_type), now, "alert")
        self._persist(alert)
        return alert

    def _duplicate_of(self, fp: str, now: float) -> Alert | None:
        if not self.settings.dedup_enabled:
            return None
        alert_id = self._open_by_fp.get(fp)
        if alert_id is None:
            return None
        alert = self._alerts[alert_id]
        window = self.settings.dedup_window_minutes * 60
        if alert.is_open and now - alert.created_at < window:
            return alert
        return None

    def _aggregate(self, alert: Alert, now: float):
        """Decide whether *alert* goes out now.  Returns (notify, window to flush)."""
        if not self.settings.aggregation_enabled or alert.level is AlertLevel.CRITICAL:
            return True, None
        flush = None
        window = self._windows.get(alert.component)
        if window is not None and now >= window.end:
            flush = self._windows.pop(alert.component)
            window = None
        if window is None:
            span = self.settings.aggregation_window_minutes * 60
            self._windows[alert.component] = _AggregationWindow(alert.component, now, now + span)
            return True, flush if flush is not None and flush.held else None
        alert.aggregated = True
        window.held.append(alert)
        return False, None

    # ------------------------------------------------------------------
    # Operator actions and implicit resolution
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, now: float, by: str = "") -> Alert:
        with self._lock:
            alert = self._alerts[alert_id]
            if alert.status is AlertStatus.ACTIVE:
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.acknowledged_at = now
                alert.acknowledged_by = by
                self.timers.cancel(alert.id)
        logger.info("Alert %s acknowledged by %s", alert_id, by or "operator")
        self._persist(alert)
        return alert

    def resolve(self, alert_id: str, now: float, reason: str = "resolved") -> Alert:
        with self._lock:
            alert = self._alerts[alert_id]
            if alert.is_open:
                alert.status = AlertStatus.RESOLVED
                alert.resolved_at = now
                alert.resolution = reason
                self.timers.cancel(alert.id)
                if self._open_by_fp.get(alert.fingerprint) == alert.id:
                    del self._open_by_fp[alert.fingerprint]
        logger.info("Alert %s resolved: %s", alert_id, reason)
        self._persist(alert)
        return alert

    def _resolve_matching(self, component: str, alert_type: str, now: float,
                          reason: str, message: str | None = None) -> list[Alert]:
        with self._lock:
            ids = [a.id for a in self._alerts.values()
                   if a.is_open and a.component == component and a.alert_type == alert_type
                   and (message is None or a.fingerprint == fingerprint(component, alert_type, message))]
        return [self.resolve(alert_id, now, reason) for alert_id in ids]

    def report_health(self, component: str, check: str, healthy: bool, now: float,
                      message: str = "", level=AlertLevel.WARNING) -> list[Alert]:
        """Raise on an unhealthy check; resolve that check's alerts once it is healthy again."""
        alert_type = f"health_{check}"
        if healthy:
            return self._resolve_matching(component, alert_type, now, "health check recovered")
        return [self.raise_alert(component, level, alert_type,
                                 f"{component} health check {check} failing", now,
                                 {"detail": message} if message else None)]

    def evaluate_metric(self, component: str, name: str, value: float, threshold: float,
                        now: float, comparison: str = "gt", level=AlertLevel.WARNING) -> list[Alert]:
        """Raise while *value* breaches *threshold*; resolve once it is back within it."""
        breached = _COMPARISONS[comparison](value, threshold)
        alert_type = f"metric_{name}"
        if self.sink is not None:
            self._safe_sink("record_metric", component, name, value, "value",
                            {"threshold": threshold, "breached": breached})
        if not breached:
            return self._resolve_matching(component, alert_type, now, "metric back to normal")
        return [self.raise_alert(
            component, level, alert_type,
            f"{name} breached threshold {comparison} {threshold}", now,
            {"value": value, "threshold": threshold})]

    def handle_event(self, event) -> list[Alert]:
        """Turn a guard SecurityEvent into alerts; an unblock resolves the block alert."""
        if event.event_type is EventType.UNBLOCK:
            return self._resolve_matching(COMPONENT, "ip_blocked", event.timestamp,
                                          f"unblocked: {event.metadata.get('reason', '')}",
                                          blocked_message(event.ip))
        mapped = alert_for_event(event)
        if mapped is None:
            return []
        return [self.raise_alert(COMPONENT, mapped.level, mapped.alert_type, mapped.message,
                                 event.timestamp, mapped.metadata)]

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def _escalation_offsets(self, level: AlertLevel) -> tuple:
        if level is AlertLevel.CRITICAL:
            factor = 1
        elif level is AlertLevel.WARNING:
            factor = self.settings.warning_escalation_multiplier
        else:
            return ()
        return tuple(s * factor for s in self.settings.escalation_level_seconds)

    def _schedule_escalation(self, alert: Alert) -> None:
        for step, offset in enumerate(self._escalation_offsets(alert.level), start=1):
            self.timers.schedule(
                alert.id, alert.created_at + offset,
                lambda now, alert_id=alert.id, step=step: self._escalate(alert_id, step, now))

    def _escalate(self, alert_id: str, step: int, now: float) -> None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status is not AlertStatus.ACTIVE:
                return
            if alert.escalation_level >= step:
                return
            alert.escalation_level = step
            alert.metadata["escalated_at"] = now
        recipients = self.router.escalation_recipients(alert, step)
        logger.warning("Alert %s escalated to level %d -> %s", alert_id, step,
                       ", ".join(recipients) or "(no recipients)")
        self._notify(alert, recipients, now, "escalation")
        self._persist(alert)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def tick(self, now: float) -> None:
        """Fire due escalations, send closed aggregation summaries, drop expired alerts."""
        self.timers.run_due(now)

        with self._lock:
            closed = [w for c, w in self._windows.items() if now >= w.end]
            for w in closed:
                del self._windows[w.component]
        for window in closed:
            if window.held:
                self._send_summary(window, now)

        self._purge_resolved(now)

    def _purge_resolved(self, now: float) -> int:
        cutoff = now - self.settings.alert_retention_days * 86400
        with self._lock:
            stale = [a.id for a in self._alerts.values()
                     if a.status is AlertStatus.RESOLVED and a.resolved_at is not None
                     and a.resolved_at < cutoff]
            for alert_id in stale:
                del self._alerts[alert_id]
        return len(stale)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _send_summary(self, window: _AggregationWindow, now: float) -> None:
        held = window.held
        top = min(held, key=lambda a: list(AlertLevel).index(a.level))
        summary = Alert(
            component=window.component,
            level=top.level,
            alert_type="aggregated_summary",
            message=(f"{len(held)} further alerts from {window.component} in the last "
                     f"{self.settings.aggregation_window_minutes} min; e.g. {held[0].message}"),
            created_at=now,
            occurrences=len(held),
            metadata={"alert_ids": [a.id for a in held],
                      "types": sorted({a.alert_type for a in held}),
                      "window_start": window.start},
        )
        recipients = self.router.route(window.component, summary.level, summary.alert_type)
        self._dispatch(summary, recipients, now, "summary", held)
        for alert in held:
            self._persist(alert)

    def _notify(self, alert: Alert, recipients: tuple, now: float, kind: str) -> None:
        self._dispatch(alert, recipients, now, kind, [alert])

    def _dispatch(self, alert: Alert, recipients: tuple, now: float, kind: str,
                  record_on: list) -> None:
        """Send *alert*; the delivery attempts land on every alert in *record_on*.

        With an executor the send happens on a worker thread and the caller
        returns at once; the alerts are persisted again once the attempts are in.
        """
        if self.executor is None:
            self._deliver(alert, recipients, now, kind, record_on)
            return
        future = self.executor.submit(self._deliver, alert, recipients, now, kind,
                                      record_on, True)
        future.add_done_callback(_log_delivery_failure)

    def _deliver(self, alert, recipients, now, kind, record_on, persist=False) -> None:
        attempts = self.dispatcher.dispatch(alert, recipients, now, kind=kind)
        with self._lock:
            for target in record_on:
                target.deliveries.extend(attempts)
        if persist:
            for target in record_on:
                self._persist(target)

    def close(self) -> None:
        """Wait for queued notifications to go out."""
        if self.executor is not None:
            self.executor.shutdown(wait=True)

    def _persist(self, alert: Alert) -> None:
        if self.sink is not None:
            self._safe_sink("upsert_alert", alert)

    def _safe_sink(self, method: str, *args) -> None:
        # Alert state lives here; a sink outage only loses the copy.
        try:
            getattr(self.sink, method)(*args)
        except TransientError as e:
            logger.error("Alert sink %s failed: %s", method, e)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, alert_id: str) -> Alert | None:
        with self._lock:
            return self._alerts.get(alert_id)

    def alerts(self, status: AlertStatus | None = None, component: str | None = None) -> list[Alert]:
        with self._lock:
            return [a for a in self._alerts.values()
                    if (status is None or a.status is status)
                    and (component is None or a.component == component)]

    def stats(self) -> dict:
        with self._lock:
            alerts = list(self._alerts.values())
        out = {
            "total": len(alerts),
            "by_status": {s.value: 0 for s in AlertStatus},
            "by_level": {lv.value: 0 for lv in AlertLevel},
            "escalated": 0,
            "occurrences": 0,
        }
        for a in alerts:
            out["by_status"][a.status.value] += 1
            out["by_level"][a.level.value] += 1
            out["occurrences"] += a.occurrences
            if a.escalation_level:
                out["escalated"] += 1
        return out

    def aggregate(self, component: str, now: float, window_minutes: int | None = None) -> dict:
        """Summarize a component's alerts created in the last *window_minutes*."""
        window_minutes = window_minutes or self.settings.aggregation_window_minutes
        since = now - window_minutes * 60
        recent = [a for a in self.alerts(component=component) if a.created_at >= since]
        by_type: dict[str, int] = {}
        by_level: dict[str, int] = {}
        for a in recent:
            by_type[a.alert_type] = by_type.get(a.alert_type, 0) + a.occurrences
            by_level[a.level.value] = by_level.get(a.level.value, 0) + 1
        recent.sort(key=lambda a: a.created_at)
        return {
            "component": component,
            "window_minutes": window_minutes,
            "count": len(recent),
            "by_type": by_type,
            "by_level": by_level,
            "exemplar": recent[0].message if recent else None,
            "first_seen": recent[0].created_at if recent else None,
            "last_seen": max(a.last_seen_at for a in recent) if recent else None,
        }
