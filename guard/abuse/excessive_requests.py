"""Excessive requests: 1000 or more requests from one IP in an hour."""

from guard.abuse import Signature


class ExcessiveRequests(Signature):
    id = "excessive_requests"
    name = "Excessive Requests"
    category = "volume"
    window_seconds = 3600
    threshold = 1000

    def match(self, record):
        return True

    def trigger(self, records):
        return len(records) >= self.threshold

    def evidence(self, records):
        return {"excessive_count": len(records)}
