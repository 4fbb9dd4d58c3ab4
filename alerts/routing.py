"""Alert routing: who hears about an alert, and who hears when it escalates.

Lookup precedence for ``(component, level, type)``:

    1. component:level:type     exact
    2. component:*:type         any level
    3. component:level:*        any type
    4. *:*:*                    catch-all
    5. the level's default recipients

Routes load from YAML:

    defaults:
      critical: [oncall@example.com]
      warning: [ops@example.com]
      info: []
    escalation:
      - [team-lead@example.com]
      - [eng-manager@example.com]
      - [cto@example.com]
    rules:
      - match: "security:critical:ddos_attack"
        recipients: [netops@example.com]
        escalation: [[netops-lead@example.com]]
"""

from pathlib import Path

import yaml

from alerts.models import AlertLevel, AlertRule, parse_recipients


class AlertRouter:

    def __init__(self, rules: list[AlertRule] | None = None,
                 defaults: dict | None = None, escalation: list | None = None):
        self._rules: dict[tuple, AlertRule] = {}
        for rule in rules or []:
            # First rule for a key wins, as in a top-down rules file.
            self._rules.setdefault(rule.key, rule)
        self.defaults = {
            AlertLevel.parse(level): parse_recipients(r) for level, r in (defaults or {}).items()
        }
        self.escalation = [parse_recipients(r) for r in (escalation or [])]

    def rule_for(self, component: str, level, alert_type: str) -> AlertRule | None:
        level = AlertLevel.parse(level).value
        for key in (
            (component, level, alert_type),
            (component, "*", alert_type),
            (component, level, "*"),
            ("*", "*", "*"),
        ):
            rule = self._rules.get(key)
            if rule is not None:
                return rule
        return None

    def route(self, component: str, level, alert_type: str) -> tuple:
        rule = self.rule_for(component, level, alert_type)
        if rule is not None:
            return rule.recipients
        return self.defaults.get(AlertLevel.parse(level), ())

    def escalation_recipients(self, alert, step: int) -> tuple:
        """Recipients for escalation level *step* (1-based).

        The matching rule's own escalation list wins; then the global
        list; then the alert's normal recipients.
        """
        rule = self.rule_for(alert.component, alert.level, alert.alert_type)
        if rule is not None and len(rule.escalation) >= step:
            return rule.escalation[step - 1]
        if len(self.escalation) >= step:
            return self.escalation[step - 1]
        return self.route(alert.component, alert.level, alert.alert_type)


def load_router(path: str | Path) -> AlertRouter:
    """Parse a routing YAML file into an AlertRouter."""
    path = Path(path)
    with open(path) as f:
        definition = yaml.safe_load(f) or {}
    if not isinstance(definition, dict):
        raise ValueError(f"{path.name}: expected a mapping at the top level")

    rules = []
    for i, entry in enumerate(definition.get("rules") or []):
        if "match" not in entry:
            raise ValueError(f"{path.name}: rule {i} missing required field 'match'")
        rules.append(AlertRule.parse(
            entry["match"], entry.get("recipients"), entry.get("escalation") or ()))

    return AlertRouter(
        rules,
        defaults=definition.get("defaults") or {},
        escalation=definition.get("escalation") or [],
    )
