# Alert rules are plain data, not classes.
#
# Every rule has the same shape: an optional service filter, an optional
# severity filter, a threshold and a trailing window. Nothing about a rule
# needs code, so rules live in the YAML config and are loaded once at
# startup (see alerter.rules.loader). The rule set is immutable for the
# lifetime of the process.

from dataclasses import dataclass

ALL_SCOPE = "ALL"
WINDOW_KEY_PREFIX = "alert:window"


@dataclass(frozen=True)
class AlertRule:
    name: str
    threshold: int
    window_seconds: int
    service_name: str | None = None
    severity: str | None = None

    def matches(self, service_name: str | None, severity: str | None) -> bool:
        """Unset filters match anything. Comparison ignores case."""
        return (
            _filter_matches(self.severity, severity)
            and _filter_matches(self.service_name, service_name)
        )

    @property
    def window_key(self) -> str:
        """Derived from the rule's own filters, never from an event.

        A global rule (no service filter) keeps one window across every
        service it matches, not one window per service.
        """
        svc = self.service_name if self.service_name is not None else ALL_SCOPE
        sev = self.severity if self.severity is not None else ALL_SCOPE
        return f"{WINDOW_KEY_PREFIX}:{self.name}:{svc}:{sev}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "serviceName": self.service_name,
            "severity": self.severity,
            "threshold": self.threshold,
            "windowSeconds": self.window_seconds,
        }


def _filter_matches(expected: str | None, actual: str | None) -> bool:
    if expected is None:
        return True
    if actual is None:
        return False
    return expected.casefold() == actual.casefold()


def matching_rules(event, rules) -> list[AlertRule]:
    """Every rule the event applies to, in configuration order."""
    severity = getattr(event.severity, "value", event.severity)
    return [r for r in rules if r.matches(event.service_name, severity)]


class RuleSet:
    """Ordered, read-only collection of rules plus the global cooldown."""

    def __init__(self, rules: list[AlertRule], cooldown_seconds: int = 60):
        self._rules = tuple(rules)
        self.cooldown_seconds = cooldown_seconds

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> tuple[AlertRule, ...]:
        return self._rules

    def matching(self, event) -> list[AlertRule]:
        return matching_rules(event, self._rules)

    def max_window_seconds(self) -> int:
        return max((r.window_seconds for r in self._rules), default=0)

    def describe(self) -> list[dict]:
        return [r.to_dict() for r in self._rules]
