"""Load alert rules from the YAML config."""

from pathlib import Path

import structlog
import yaml

from alerter.events import Severity
from alerter.exceptions import ConfigError
from alerter.rules import AlertRule

logger = structlog.get_logger(__name__)

_REQUIRED_FIELDS = ("name", "threshold", "window_seconds")
_KNOWN_FIELDS = frozenset(_REQUIRED_FIELDS + ("service_name", "severity"))


def load_rules(path: str | Path) -> list[AlertRule]:
    """Read ``alerting.rules`` from a config file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    with open(path) as f:
        document = yaml.safe_load(f) or {}
    alerting = document.get("alerting") or {}
    return parse_rules(alerting.get("rules") or [], source=path.name)


def parse_rules(definitions: list, source: str = "config") -> list[AlertRule]:
    """Validate raw rule mappings and build AlertRule instances in order."""
    if not isinstance(definitions, list):
        raise ConfigError(f"{source}: alerting.rules must be a list")

    rules = []
    seen: dict[tuple, AlertRule] = {}
    for index, definition in enumerate(definitions):
        rule = _parse_rule(definition, f"{source}: rules[{index}]")

        scope = _scope(rule)
        if scope in seen:
            raise ConfigError(
                f"{source}: rule '{rule.name}' is defined twice with the same scope"
            )
        if any(r.name == rule.name for r in rules):
            # Cooldown is keyed by name, so these rules will suppress each other.
            logger.warning("rule_name_shared", rule=rule.name, window_key=rule.window_key)

        seen[scope] = rule
        rules.append(rule)
    return rules


def _scope(rule: AlertRule) -> tuple:
    # filters match case-insensitively, so scopes must compare the same way
    filters = tuple(
        v.casefold() if v is not None else None
        for v in (rule.service_name, rule.severity)
    )
    return (rule.name,) + filters


def _parse_rule(definition, where: str) -> AlertRule:
    if not isinstance(definition, dict):
        raise ConfigError(f"{where}: rule must be a mapping")

    for field in _REQUIRED_FIELDS:
        if field not in definition:
            raise ConfigError(f"{where}: missing required field '{field}'")

    unknown = set(definition) - _KNOWN_FIELDS
    if unknown:
        raise ConfigError(f"{where}: unknown field(s) {', '.join(sorted(unknown))}")

    name = definition["name"]
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{where}: 'name' must be a non-empty string")
    if ":" in name:
        raise ConfigError(f"{where}: 'name' must not contain ':'")

    return AlertRule(
        name=name.strip(),
        threshold=_positive_int(definition["threshold"], f"{where}: 'threshold'"),
        window_seconds=_positive_int(
            definition["window_seconds"], f"{where}: 'window_seconds'"
        ),
        service_name=_optional_text(definition.get("service_name"), f"{where}: 'service_name'"),
        severity=_severity(definition.get("severity"), where),
    )


def _positive_int(value, what: str) -> int:
    # bool is an int subclass; `threshold: yes` is a typo, not 1
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{what} must be a positive integer, got {value!r}")
    return value


def _optional_text(value, what: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{what} must be a non-empty string when set")
    return value.strip()


def _severity(value, where: str) -> str | None:
    value = _optional_text(value, f"{where}: 'severity'")
    if value is None:
        return None
    if value.upper() not in {s.value for s in Severity}:
        allowed = ", ".join(s.value for s in Severity)
        raise ConfigError(f"{where}: unknown severity {value!r} (expected one of {allowed})")
    return value
