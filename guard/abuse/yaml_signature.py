"""Sigma-style abuse signature loaded from YAML.

Implements the Signature interface (match, trigger, evidence) so the
AbuseDetector treats it exactly like a built-in.  Metadata follows the
Sigma layout; the ``custom:`` block carries the window, the trigger and
the evidence to compute.

Selection fields name RequestRecord attributes.  A field may carry one
Sigma modifier:

    endpoint|startswith: ["/wp-admin", "/.env"]
    user_agent|contains: "bot"
    query|re: "(?i)select.+from"
    status_code: [401, 403]

All fields must match (AND); a list value matches any element (OR).
"""

import re
from pathlib import Path

import yaml

from guard.abuse import Signature

_OPS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
}

_MODIFIERS = ("contains", "startswith", "endswith", "re")

# Mapping path -> keys a definition must carry there.
_SCHEMA = {
    (): ("title", "id", "level", "detection", "custom"),
    ("detection",): ("selection", "condition"),
    ("detection", "selection"): (),
    ("custom",): ("window_seconds", "trigger"),
    ("custom", "trigger"): ("threshold",),
}


class YamlSignature(Signature):
    """An abuse signature parsed from a Sigma-style YAML definition."""

    def __init__(self, definition: dict, source: str = "signature"):
        _check_schema(definition, source)
        self.source = source
        self._def = definition
        self._custom = definition["custom"]
        self._detection = definition["detection"]

        self.id = self._custom.get("signature_id", str(definition["id"]))
        self.name = definition["title"]
        self.level = definition["level"]
        self.category = self._custom.get("category", "custom")
        self.window_seconds = int(self._custom["window_seconds"])
        self.description = definition.get("description", "")
        if self.window_seconds <= 0:
            raise ValueError(f"{source}: window_seconds must be positive")

        if not self._detection["selection"]:
            raise ValueError(f"{source}: detection.selection matches nothing")
        self._selection = [
            _compile_field(key, value)
            for key, value in self._detection["selection"].items()
        ]

        trigger = self._custom["trigger"]
        if trigger.get("type", "count") != "count":
            raise ValueError(f"{self.id}: unknown trigger type {trigger['type']!r}")
        if trigger.get("operator", "gte") not in _OPS:
            raise ValueError(f"{self.id}: unknown operator {trigger['operator']!r}")

    @classmethod
    def from_file(cls, path) -> "YamlSignature":
        """Parse one ``.yml`` signature file."""
        path = Path(path)
        with open(path) as f:
            return cls(yaml.safe_load(f), source=path.name)

    def match(self, record) -> bool:
        for field, modifier, expected in self._selection:
            raw = getattr(record, field, None)
            if modifier is None:
                if raw not in expected:
                    return False
                continue
            actual = str(raw or "")[: self.max_field_length]
            if not any(_apply(modifier, actual, e) for e in expected):
                return False
        return True

    def trigger(self, records: list) -> bool:
        rule = self._custom["trigger"]
        op = _OPS[rule.get("operator", "gte")]
        return op(len(records), rule["threshold"])

    def evidence(self, records: list) -> dict:
        if not records:
            return {}
        result = {}
        for item in self._custom.get("evidence", []):
            result[item["output_key"]] = _eval_evidence(records, item)
        if not result:
            result = super().evidence(records)
        return result


def _compile_field(key: str, value):
    field, _, modifier = key.partition("|")
    if modifier and modifier not in _MODIFIERS:
        raise ValueError(f"unknown field modifier {modifier!r} on {field!r}")
    values = value if isinstance(value, list) else [value]
    if modifier == "re":
        values = [re.compile(str(v)) for v in values]
    elif modifier:
        values = [str(v).lower() for v in values]
    return field, modifier or None, values


def _apply(modifier: str, actual: str, expected) -> bool:
    if modifier == "re":
        return bool(expected.search(actual))
    actual = actual.lower()
    if modifier == "contains":
        return expected in actual
    if modifier == "startswith":
        return actual.startswith(expected)
    return actual.endswith(expected)


def _eval_evidence(records, item):
    operation = item["operation"]
    if operation == "count":
        return len(records)
    if operation == "unique_list":
        field = item["field"]
        return sorted({str(getattr(r, field, "unknown")) for r in records})[:10]
    if operation == "events_per_second":
        timestamps = [r.timestamp for r in records]
        span = max(timestamps) - min(timestamps) if len(timestamps) > 1 else 1
        return round(len(records) / max(span, 1), 2)
    raise ValueError(f"Unknown evidence operation: {operation}")


def _check_schema(definition, source: str) -> None:
    """Raise ValueError naming the first missing or misshapen part of *definition*."""
    for path, keys in _SCHEMA.items():
        node = definition
        for part in path:
            node = node[part]
        where = ".".join(path) or "top level"
        if not isinstance(node, dict):
            raise ValueError(f"{source}: expected a mapping at {where}")
        for key in keys:
            if key not in node:
                raise ValueError(f"{source}: {'.'.join(path + (key,))} is required")
