"""Known scraper, scanner and bare HTTP-library user agents."""

import re

from guard.abuse import Signature

_AGENTS = re.compile(
    r"(sqlmap|nikto|nmap|masscan|zgrab|nuclei|dirbuster|gobuster|wpscan"
    r"|scrapy|httrack|python-requests|python-urllib|go-http-client"
    r"|libwww-perl|curl/|wget/|java/\d|okhttp|headlesschrome|phantomjs)",
    re.IGNORECASE,
)


class ScraperUserAgent(Signature):
    id = "scraper_user_agent"
    name = "Scraper / Scanner User Agent"
    category = "scraper"
    window_seconds = 3600

    def match(self, record):
        return bool(_AGENTS.search(self._field(record, "user_agent")))

    def evidence(self, records):
        return {
            "matches": len(records),
            "user_agents": sorted({r.user_agent for r in records})[:5],
        }
