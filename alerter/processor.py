"""Per-event consumption path: guard, match, append.

Pure business logic, no Kafka dependency. The worker in alerter.consumer
feeds decoded events in and acts on the returned ProcessResult: it commits
the offset only when ``acknowledge`` is set.
"""

from dataclasses import dataclass, field

import structlog

from alerter import metrics
from alerter.events import LogEvent
from alerter.exceptions import ProcessingError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    acknowledge: bool
    duplicate: bool = False
    matched_rules: list[str] = field(default_factory=list)


class EventProcessor:

    def __init__(self, rules, guard, counter):
        self.rules = rules
        self.guard = guard
        self.counter = counter

    def process(self, event: LogEvent, idempotency_key: str | None = None) -> ProcessResult:
        """Guard the event, then append it to the window of every rule it matches.

        A duplicate is acknowledged without touching any window. If an append
        fails, the guard key is released before the failure propagates (as
        ProcessingError), so the redelivered copy is not mistaken for a
        duplicate and lost.
        """
        key = idempotency_key or event.idempotency_key

        try:
            acquired = self.guard.try_acquire(key)
        except Exception as e:
            # nothing was recorded yet, so there is nothing to release
            raise ProcessingError(
                f"idempotency check failed: {e}", idempotency_key=key,
            ) from e

        if not acquired:
            metrics.duplicate_events.inc()
            return ProcessResult(acknowledge=True, duplicate=True)

        try:
            matched = []
            for rule in self.rules.matching(event):
                self.counter.append(rule.window_key, event.timestamp)
                metrics.window_appends.labels(rule=rule.name).inc()
                matched.append(rule.name)
        except Exception as e:
            try:
                self.guard.release(key)
            except Exception:
                # Nothing more can be done here; the record expires with its TTL.
                logger.exception("idempotency_release_failed", key=key)
            raise ProcessingError(
                f"failed to record event from {event.service_name}: {e}",
                idempotency_key=key,
            ) from e

        metrics.events_consumed.inc()
        if matched:
            logger.debug("event_recorded", service=event.service_name,
                         severity=event.severity.value, rules=matched)
        return ProcessResult(acknowledge=True, matched_rules=matched)
