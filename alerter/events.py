"""Inbound log event contract.

Events arrive as JSON record values produced by the ingestion service.
Field names are camelCase on the wire (serviceName, traceId, ...) and are
normalized to a frozen dataclass here so the rest of the pipeline never
touches raw dicts.
"""

import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from alerter.exceptions import InvalidEventError

IDEMPOTENCY_KEY_HEADER = "X-Idempotency-Key"


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value) -> "Severity":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidEventError(f"severity must be a string, got {value!r}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise InvalidEventError(
                f"unknown severity {value!r} (expected one of {allowed})"
            ) from None


@dataclass(frozen=True)
class LogEvent:
    service_name: str
    severity: Severity
    message: str
    timestamp: float
    trace_id: str | None = None
    host: str | None = None
    metadata: dict = field(default_factory=dict)
    idempotency_key: str | None = None

    @classmethod
    def from_dict(cls, data: dict, received_at: float | None = None) -> "LogEvent":
        """Validate a decoded payload. Missing timestamp falls back to receive time."""
        if not isinstance(data, dict):
            raise InvalidEventError("event payload must be a JSON object")

        service_name = _required_text(data, "serviceName")
        message = _required_text(data, "message")
        if data.get("severity") is None:
            raise InvalidEventError("severity is required")
        severity = Severity.parse(data["severity"])

        raw_ts = data.get("timestamp")
        if raw_ts is None:
            timestamp = received_at if received_at is not None else time.time()
        else:
            timestamp = parse_timestamp(raw_ts)

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidEventError("metadata must be an object")

        return cls(
            service_name=service_name,
            severity=severity,
            message=message,
            timestamp=timestamp,
            trace_id=data.get("traceId"),
            host=data.get("host"),
            metadata=metadata,
            idempotency_key=_idempotency_key(data.get("idempotencyKey")),
        )

    @classmethod
    def from_json(cls, raw: bytes | str, received_at: float | None = None) -> "LogEvent":
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidEventError(f"undecodable event payload: {e}") from e
        return cls.from_dict(data, received_at=received_at)


def parse_timestamp(value) -> float:
    """Accept epoch seconds (int/float/numeric string) or ISO-8601.

    Naive ISO strings are taken as UTC, matching how the producers emit them.
    """
    if isinstance(value, bool):
        raise InvalidEventError(f"invalid timestamp {value!r}")
    if isinstance(value, (int, float)):
        return _finite(value, value)
    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            pass
        else:
            return _finite(number, value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidEventError(f"invalid timestamp {value!r}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise InvalidEventError(f"invalid timestamp {value!r}")


def header_value(headers, name: str) -> str | None:
    """Look up a record header. confluent_kafka hands headers over as a
    list of (name, bytes) tuples, or None when the record has none."""
    for key, value in headers or []:
        if key != name or value is None:
            continue
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return value.strip() or None
    return None


def _finite(number, original) -> float:
    # nan and inf cannot be ordered or stored as sorted-set scores
    try:
        number = float(number)
    except OverflowError:
        raise InvalidEventError(f"invalid timestamp {original!r}") from None
    if not math.isfinite(number):
        raise InvalidEventError(f"invalid timestamp {original!r}")
    return number


def _idempotency_key(value) -> str | None:
    """Body keys may be strings or integers; anything else is rejected."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise InvalidEventError(f"idempotencyKey must be a string, got {value!r}")
    return value.strip() or None


def _required_text(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidEventError(f"{name} is required")
    return value
