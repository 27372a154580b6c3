"""Service settings loaded from a YAML file.

Every setting has a default, so a config file only needs the sections it
changes (typically just ``alerting.rules``). Validation happens here, at
startup, and raises ConfigError: a malformed config never reaches the
consumer or evaluator.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

from alerter.exceptions import ConfigError
from alerter.rules import AlertRule, RuleSet
from alerter.rules.loader import parse_rules

DEFAULT_CONFIG_PATH = Path("config/alerter.yml")


@dataclass(frozen=True)
class AlertingSettings:
    cooldown_seconds: int = 60
    evaluation_interval_ms: int = 5000
    rules: tuple[AlertRule, ...] = ()


@dataclass(frozen=True)
class KafkaSettings:
    bootstrap_servers: str = "localhost:9092"
    topic: str = "logs"
    group_id: str = "alert-service"
    concurrency: int = 3
    max_attempts: int = 3
    retry_backoff_ms: int = 1000
    dead_letter_topic: str | None = None


@dataclass(frozen=True)
class RedisSettings:
    # "memory" selects the in-process backends (single instance only)
    url: str = "redis://localhost:6379/0"


@dataclass(frozen=True)
class StoreSettings:
    sqlite_path: str = "data/alerts.db"


@dataclass(frozen=True)
class IdempotencySettings:
    ttl_hours: int = 24


@dataclass(frozen=True)
class WindowSettings:
    key_ttl_seconds: int = 300


@dataclass(frozen=True)
class MetricsSettings:
    port: int = 9108


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "json"


@dataclass(frozen=True)
class Settings:
    alerting: AlertingSettings = field(default_factory=AlertingSettings)
    kafka: KafkaSettings = field(default_factory=KafkaSettings)
    redis: RedisSettings = field(default_factory=RedisSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)
    window: WindowSettings = field(default_factory=WindowSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def rule_set(self) -> RuleSet:
        return RuleSet(list(self.alerting.rules), self.alerting.cooldown_seconds)

    def effective_key_ttl(self) -> int:
        """Key TTL never shorter than the retention prune relies on."""
        return max(self.window.key_ttl_seconds, 2 * self.rule_set().max_window_seconds())


# Settings that must be strictly positive.
_POSITIVE = {
    ("alerting", "cooldown_seconds"),
    ("alerting", "evaluation_interval_ms"),
    ("kafka", "concurrency"),
    ("kafka", "max_attempts"),
    ("idempotency", "ttl_hours"),
    ("window", "key_ttl_seconds"),
}
_LOG_FORMATS = ("json", "console")


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from *path*, or the default location if it exists."""
    if path is None:
        if not DEFAULT_CONFIG_PATH.is_file():
            return Settings()
        path = DEFAULT_CONFIG_PATH
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path.name}: invalid YAML: {e}") from e
    return settings_from_dict(document or {}, source=path.name)


def settings_from_dict(document: dict, source: str = "config") -> Settings:
    if not isinstance(document, dict):
        raise ConfigError(f"{source}: top level must be a mapping")

    sections = {f.name: f for f in fields(Settings)}
    unknown = set(document) - set(sections)
    if unknown:
        raise ConfigError(f"{source}: unknown section(s) {', '.join(sorted(unknown))}")

    built = {}
    for name, section_field in sections.items():
        raw = document.get(name) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{source}: '{name}' must be a mapping")
        raw = dict(raw)
        if name == "alerting":
            raw["rules"] = tuple(parse_rules(raw.get("rules") or [], source=source))
        built[name] = _build_section(section_field.default_factory, name, raw, source)

    settings = Settings(**built)
    if settings.logging.format not in _LOG_FORMATS:
        raise ConfigError(
            f"{source}: logging.format must be one of {', '.join(_LOG_FORMATS)}"
        )
    if settings.metrics.port < 0:
        raise ConfigError(f"{source}: metrics.port must be >= 0")
    if settings.kafka.retry_backoff_ms < 0:
        raise ConfigError(f"{source}: kafka.retry_backoff_ms must be >= 0")
    return settings


def override(settings: Settings, section: str, **values) -> Settings:
    """Return a copy with selected values replaced; None values are ignored."""
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        return settings
    current = getattr(settings, section)
    return replace(settings, **{section: replace(current, **values)})


def _build_section(factory, name: str, raw: dict, source: str):
    defaults = factory()
    known = {f.name: f for f in fields(defaults)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigError(
            f"{source}: unknown key(s) in '{name}': {', '.join(sorted(unknown))}"
        )

    for key, value in raw.items():
        if key == "rules":
            continue
        default = getattr(defaults, key)
        # optional settings default to None and take a string when set
        expected = str if default is None else type(default)
        if value is None:
            if default is None:
                continue
            raise ConfigError(f"{source}: {name}.{key} must not be null")
        if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            raise ConfigError(f"{source}: {name}.{key} must be an integer, got {value!r}")
        if expected is str and not isinstance(value, str):
            raise ConfigError(f"{source}: {name}.{key} must be a string, got {value!r}")
        if (name, key) in _POSITIVE and value <= 0:
            raise ConfigError(f"{source}: {name}.{key} must be positive, got {value!r}")
    return replace(defaults, **raw)
