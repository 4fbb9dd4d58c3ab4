"""IP registry: whitelist, blacklist and temporary blocks.

Single source of truth for block state.  Detectors *request* blocks here;
nothing else removes a temp block except ``sweep_expired()`` or an explicit
operator ``unblock``/``whitelist``.

Progressive policy (violations within the observation period):

    1st -> 15 min    2nd -> 1 h    3rd -> 24 h
    4th+ -> 24 h, and the record is flagged for operator review.  A
            permanent blacklist is never applied automatically: an
            irreversible false positive costs more than a repeat block.
"""

import logging

from guard.models import EventType, IPRecord, IPStatus, ListType, SecurityEvent

logger = logging.getLogger(__name__)

_LADDER_MINUTES = (15, 60, 1440)
REVIEW_THRESHOLD = len(_LADDER_MINUTES) + 1


def block_minutes(violation_count: int) -> int:
    """Block duration for the n-th violation.  Non-decreasing in n."""
    if violation_count <= 0:
        return 0
    return _LADDER_MINUTES[min(violation_count, len(_LADDER_MINUTES)) - 1]


class IPRegistry:

    def __init__(self, settings, store, sink):
        self.settings = settings
        self.store = store
        self.sink = sink
        self._violation_period = settings.violation_period_hours * 3600

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def record(self, ip: str) -> IPRecord | None:
        return self.store.get(ip)

    def status(self, ip: str, now: float) -> IPStatus:
        rec = self.store.get(ip)
        if rec is None or rec.list_type is None:
            return IPStatus.CLEAR
        if rec.list_type is ListType.WHITELIST:
            return IPStatus.WHITELISTED
        if rec.list_type is ListType.BLACKLIST:
            return IPStatus.BLACKLISTED
        # An expired temp block no longer denies, even before the sweep runs.
        if rec.is_expired(now):
            return IPStatus.CLEAR
        return IPStatus.TEMP_BLOCKED

    def is_whitelisted(self, ip: str) -> bool:
        rec = self.store.get(ip)
        return rec is not None and rec.list_type is ListType.WHITELIST

    def violation_count(self, ip: str, now: float) -> int:
        rec = self.store.get(ip)
        if rec is None or rec.last_violation_at is None:
            return 0
        if now - rec.last_violation_at > self._violation_period:
            return 0
        return rec.violation_count

    def entries(self, list_type: ListType | None = None) -> list[IPRecord]:
        records = [r for r in self.store.all() if r.list_type is not None]
        if list_type is not None:
            records = [r for r in records if r.list_type is list_type]
        return sorted(records, key=lambda r: r.ip)

    def stats(self, now: float) -> dict:
        counts = {s.value: 0 for s in IPStatus if s is not IPStatus.CLEAR}
        pending_review = 0
        for rec in self.store.all():
            status = self.status(rec.ip, now)
            if status is not IPStatus.CLEAR:
                counts[status.value] += 1
            if rec.review_requested:
                pending_review += 1
        counts["pending_review"] = pending_review
        return counts

    # ------------------------------------------------------------------
    # Mutations (serialized per IP)
    # ------------------------------------------------------------------

    def record_violation(self, ip: str, now: float) -> int:
        """Count one violation for *ip*; returns the count within the period."""
        with self.store.lock(ip):
            rec = self.store.get(ip) or IPRecord(ip=ip, created_at=now)
            if rec.list_type is ListType.WHITELIST:
                return 0
            if rec.last_violation_at is not None and \
                    now - rec.last_violation_at > self._violation_period:
                rec.violation_count = 0
            rec.violation_count += 1
            rec.last_violation_at = now
            self.store.put(rec)
            return rec.violation_count

    def add_block(self, ip: str, reason: str, violation_count: int, now: float,
                  category: str = "abuse") -> SecurityEvent | None:
        """Temp-block *ip* for the ladder duration of *violation_count*."""
        minutes = block_minutes(max(violation_count, 1))
        review = violation_count >= REVIEW_THRESHOLD
        return self._temp_block(ip, minutes, reason, now, category, review)

    def block_for(self, ip: str, minutes: float, reason: str, now: float,
                  category: str = "ddos") -> SecurityEvent | None:
        """Temp-block *ip* for a fixed duration, outside the violation ladder."""
        return self._temp_block(ip, minutes, reason, now, category, review=False)

    def _temp_block(self, ip, minutes, reason, now, category, review):
        expires_at = now + minutes * 60
        with self.store.lock(ip):
            rec = self.store.get(ip) or IPRecord(ip=ip, created_at=now)
            if rec.list_type is ListType.WHITELIST:
                logger.info("Refusing to block whitelisted IP %s (%s)", ip, reason)
                return None
            if rec.list_type is ListType.BLACKLIST:
                return None
            active = rec.list_type is ListType.TEMP_BLOCK and not rec.is_expired(now)
            if active and rec.expires_at >= expires_at and (rec.review_requested or not review):
                return None  # already blocked at least as long
            rec.list_type = ListType.TEMP_BLOCK
            rec.reason = reason
            rec.created_at = now
            rec.expires_at = max(expires_at, rec.expires_at or 0) if active else expires_at
            rec.category = category
            rec.review_requested = rec.review_requested or review
            self.store.put(rec)
            violations = rec.violation_count

        logger.warning("IP %s blocked for %s min (%s): %s", ip, minutes, category, reason)
        if review:
            logger.warning("IP %s reached %d violations; flagged for blacklist review",
                           ip, violations)
        event = SecurityEvent(
            event_type=EventType.BLOCK,
            ip=ip,
            timestamp=now,
            metadata={
                "reason": reason,
                "type": ListType.TEMP_BLOCK.value,
                "category": category,
                "duration_minutes": minutes,
                "expires_at": expires_at,
                "violation_count": violations,
                "review_requested": review,
            },
        )
        self.sink.record_event(event)
        self.sink.record_metric("security", "ips_blocked", 1, "count",
                                {"ip": ip, "category": category})
        return event

    def whitelist(self, ip: str, reason: str, now: float) -> SecurityEvent | None:
        """Whitelist *ip*.  Reverses any block at once (false-positive path)."""
        with self.store.lock(ip):
            rec = self.store.get(ip) or IPRecord(ip=ip, created_at=now)
            was_blocked = rec.list_type in (ListType.BLACKLIST, ListType.TEMP_BLOCK)
            rec.list_type = ListType.WHITELIST
            rec.reason = reason
            rec.created_at = now
            rec.expires_at = None
            rec.review_requested = False
            self.store.put(rec)
        logger.info("IP %s whitelisted: %s", ip, reason)
        if was_blocked:
            return self._emit_unblock(ip, now, "whitelisted")
        return None

    def blacklist(self, ip: str, reason: str, now: float) -> SecurityEvent:
        """Permanently blacklist *ip* (operator action)."""
        with self.store.lock(ip):
            rec = self.store.get(ip) or IPRecord(ip=ip, created_at=now)
            if rec.list_type is ListType.WHITELIST:
                raise ValueError(f"{ip} is whitelisted; remove it from the whitelist first")
            rec.list_type = ListType.BLACKLIST
            rec.reason = reason
            rec.created_at = now
            rec.expires_at = None
            rec.category = "manual"
            rec.review_requested = False
            self.store.put(rec)
        logger.warning("IP %s blacklisted: %s", ip, reason)
        event = SecurityEvent(
            event_type=EventType.BLOCK, ip=ip, timestamp=now,
            metadata={"reason": reason, "type": ListType.BLACKLIST.value,
                      "category": "manual"},
        )
        self.sink.record_event(event)
        return event

    def remove(self, ip: str, list_type: ListType, now: float) -> SecurityEvent | None:
        """Remove *ip* from *list_type*.  Returns the unblock event, if any."""
        with self.store.lock(ip):
            rec = self.store.get(ip)
            if rec is None or rec.list_type is not list_type:
                return None
            rec.list_type = None
            rec.expires_at = None
            rec.review_requested = False
            self.store.put(rec)
        logger.info("IP %s removed from %s", ip, list_type.value)
        if list_type is ListType.WHITELIST:
            return None
        return self._emit_unblock(ip, now, f"removed from {list_type.value}")

    def unblock(self, ip: str, now: float) -> SecurityEvent | None:
        """Operator unblock: clears a temp block or blacklist entry."""
        rec = self.store.get(ip)
        if rec is None or rec.list_type not in (ListType.TEMP_BLOCK, ListType.BLACKLIST):
            return None
        return self.remove(ip, rec.list_type, now)

    def sweep_expired(self, now: float) -> list[SecurityEvent]:
        """Remove expired temp blocks, emitting one unblock event each.

        Idempotent: a second call with nothing newly expired emits nothing.
        """
        events = []
        for rec in self.store.all():
            if rec.list_type is not ListType.TEMP_BLOCK or not rec.is_expired(now):
                continue
            with self.store.lock(rec.ip):
                current = self.store.get(rec.ip)
                # Re-check under the lock; the record may have been extended.
                if current is None or current.list_type is not ListType.TEMP_BLOCK \
                        or not current.is_expired(now):
                    continue
                current.list_type = None
                current.expires_at = None
                self.store.put(current)
            events.append(self._emit_unblock(rec.ip, now, "expired"))
        if events:
            logger.info("Cleaned up %d expired temporary block(s)", len(events))
        return events

    def _emit_unblock(self, ip, now, reason) -> SecurityEvent:
        event = SecurityEvent(event_type=EventType.UNBLOCK, ip=ip, timestamp=now,
                              metadata={"reason": reason})
        self.sink.record_event(event)
        return event
