"""Injection payloads in the request path or query string.

A single hit is enough: legitimate clients don't send ``UNION SELECT``.
Matching runs on the URL-decoded path and query, lower-cased.
"""

import re
from urllib.parse import unquote_plus

from guard.abuse import Signature


class _PayloadSignature(Signature):
    category = "injection"
    window_seconds = 3600
    pattern: re.Pattern

    def match(self, record):
        text = unquote_plus(self._field(record, "endpoint") + "?" + self._field(record, "query"))
        return bool(self.pattern.search(text.lower()))


class SqlInjection(_PayloadSignature):
    id = "sql_injection"
    name = "SQL Injection Attempt"
    pattern = re.compile(
        r"(\bunion\b[\s/*]+(all[\s/*]+)?select\b"
        r"|\bor\b\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+"
        r"|['\"]\s*(or|and)\s+['\"]?[a-z0-9]+['\"]?\s*=\s*['\"]?[a-z0-9]+"
        r"|;\s*(drop|delete|insert|update|truncate)\s+"
        r"|\bsleep\s*\(\s*\d+\s*\)"
        r"|\bwaitfor\s+delay\b"
        r"|information_schema"
        r"|--\s*$)"
    )


class CrossSiteScripting(_PayloadSignature):
    id = "xss"
    name = "Cross-Site Scripting Attempt"
    pattern = re.compile(
        r"(<\s*script\b|javascript\s*:|\bon(error|load|mouseover)\s*=|<\s*iframe\b"
        r"|document\.cookie)"
    )


class PathTraversal(_PayloadSignature):
    id = "path_traversal"
    name = "Path Traversal Attempt"
    pattern = re.compile(r"(\.\./|\.\.\\|/etc/passwd|/proc/self/|\bboot\.ini\b)")
