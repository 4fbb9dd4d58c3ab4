"""High error rate: half or more of an IP's requests fail.

Credential stuffing, ID enumeration and fuzzing all leave a trail of 4xx.
Needs a minimum sample so one failed request isn't a 100 % error rate.
"""

from guard.abuse import Signature


class HighErrorRate(Signature):
    id = "high_error_rate"
    name = "High Error Rate"
    category = "errors"
    window_seconds = 3600
    min_requests = 10
    threshold = 0.5

    def match(self, record):
        return True

    def trigger(self, records):
        if len(records) < self.min_requests:
            return False
        return _error_rate(records) >= self.threshold

    def evidence(self, records):
        return {
            "error_rate_percent": round(_error_rate(records) * 100),
            "total_requests": len(records),
        }


def _error_rate(records) -> float:
    if not records:
        return 0.0
    errors = sum(1 for r in records if r.status_code >= 400)
    return errors / len(records)
