"""Rapid requests: 10 or more refused requests inside 10 seconds.

A client that keeps firing after it has been told to back off is a
script or a retry loop, not a person.  Only requests the guard already
rejected count, so a client spending its rate allowance evenly never
trips this.
"""

from guard.abuse import Signature


class RapidRequests(Signature):
    id = "rapid_requests"
    name = "Rapid Requests"
    category = "volume"
    window_seconds = 10
    rejected_only = True
    threshold = 10

    def match(self, record):
        return True

    def trigger(self, records):
        return len(records) >= self.threshold

    def evidence(self, records):
        timestamps = [r.timestamp for r in records]
        span = max(timestamps) - min(timestamps) if len(timestamps) > 1 else 1
        return {
            "rapid_count": len(records),
            "requests_per_second": round(len(records) / max(span, 1), 2),
        }
