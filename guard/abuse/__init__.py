# Abuse signatures as Python classes, with a Sigma-style YAML escape hatch.
#
# Built-in signatures live one per file so a new pattern is one reviewed
# file plus its tests.  Operators who need a quick site-specific pattern
# (a scanner path, a leaked-credential endpoint) drop a YAML file into a
# signature directory instead; see loader.py and yaml_signature.py.


class Signature:
    """Base abuse signature. Subclass and implement match(); override trigger() for volume patterns."""

    id: str
    name: str
    category: str  # injection | scraper | volume | errors | custom
    window_seconds: int = 3600
    # Match only requests the guard already refused (rate limited).
    rejected_only: bool = False

    # Cap on how much of any one field a signature inspects, so matching
    # time stays bounded whatever the client sends.
    max_field_length: int = 2048

    def match(self, record) -> bool:
        """Return True if this request record counts toward the signature."""
        raise NotImplementedError

    def trigger(self, records: list) -> bool:
        """Given the matching records in the window, is this abuse?

        Content signatures fire on a single hit. A SQL injection string is
        near-certain abuse however rarely it is sent.
        """
        return len(records) > 0

    def evidence(self, records: list) -> dict:
        """Summarize the matching records for the abuse event and alert."""
        return {
            "matches": len(records),
            "endpoints": sorted({r.endpoint for r in records})[:10],
        }

    def _field(self, record, name: str) -> str:
        return str(getattr(record, name, "") or "")[: self.max_field_length]


from guard.abuse.injection import CrossSiteScripting, PathTraversal, SqlInjection
from guard.abuse.scraper_agent import ScraperUserAgent
from guard.abuse.rapid_requests import RapidRequests
from guard.abuse.error_rate import HighErrorRate
from guard.abuse.excessive_requests import ExcessiveRequests


def builtin_signatures() -> list[Signature]:
    return [
        SqlInjection(),
        CrossSiteScripting(),
        PathTraversal(),
        ScraperUserAgent(),
        RapidRequests(),
        HighErrorRate(),
        ExcessiveRequests(),
    ]
