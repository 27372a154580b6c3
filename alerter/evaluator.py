"""Cooldown-aware threshold evaluator.

Runs on its own ticker thread, independent of consumption. Every tick,
for each rule:

  1. Count   — entries in the rule's window right now
  2. Compare — below threshold: nothing to do
  3. Cooldown — an alert for this rule name fired within cooldown_seconds?
                yes: suppress; no: persist a new alert (the next anchor)
  4. Prune   — always, whichever branch was taken

Ticks never overlap. The ticker thread runs them one after another and a
non-blocking lock turns any concurrent evaluate_rules() call into a no-op,
so two ticks can never both see "not in cooldown" and fire twice.
"""

import threading
import time

import structlog

from alerter import metrics
from alerter.rules import AlertRule
from alerter.store import Alert

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL_MS = 5000
DEFAULT_COOLDOWN_SECONDS = 60


class AlertEvaluator:

    def __init__(self, rules, counter, store, cooldown_seconds: int | None = None,
                 interval_ms: int = DEFAULT_INTERVAL_MS, clock=time.time):
        self.rules = rules
        self.counter = counter
        self.store = store
        # defaults to the cooldown the RuleSet was configured with
        if cooldown_seconds is None:
            cooldown_seconds = getattr(rules, "cooldown_seconds", DEFAULT_COOLDOWN_SECONDS)
        self.cooldown_seconds = cooldown_seconds
        self.interval_ms = interval_ms
        self._clock = clock

        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_rules(self) -> list[Alert] | None:
        """Run one tick over every rule. Returns the alerts fired, or None
        if another tick was already in flight."""
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("evaluation_tick_skipped", reason="previous tick in flight")
            return None
        try:
            fired = []
            with metrics.tick_duration.time():
                for rule in self.rules:
                    try:
                        alert = self.evaluate_rule(rule)
                    except Exception:
                        # store or window unavailable: the window survives,
                        # so the next tick picks this rule up again
                        metrics.evaluation_errors.labels(rule=rule.name).inc()
                        logger.exception("rule_evaluation_failed", rule=rule.name)
                        continue
                    if alert is not None:
                        fired.append(alert)
            return fired
        finally:
            self._tick_lock.release()

    def evaluate_rule(self, rule: AlertRule) -> Alert | None:
        window_key = rule.window_key
        count = self.counter.count(window_key, rule.window_seconds)
        metrics.window_count.labels(rule=rule.name).set(count)
        logger.debug("rule_evaluated", rule=rule.name, count=count,
                     threshold=rule.threshold)

        alert = None
        if count >= rule.threshold:
            if self.in_cooldown(rule):
                metrics.alerts_suppressed.labels(rule=rule.name).inc()
                logger.debug("alert_suppressed", rule=rule.name, count=count,
                             cooldown_seconds=self.cooldown_seconds)
            else:
                alert = self._trigger(rule, count)

        self.counter.prune(window_key, rule.window_seconds)
        return alert

    def in_cooldown(self, rule: AlertRule) -> bool:
        """Keyed by rule name only: rules sharing a name share a cooldown."""
        since = self._clock() - self.cooldown_seconds
        return self.store.most_recent_alert(rule.name, since) is not None

    def _trigger(self, rule: AlertRule, count: int) -> Alert:
        logger.warning("alert_triggered", rule=rule.name, count=count,
                       threshold=rule.threshold)
        alert = self.store.save(Alert(
            rule_name=rule.name,
            service_name=rule.service_name,
            severity=rule.severity,
            count=count,
            threshold=rule.threshold,
            window_seconds=rule.window_seconds,
            triggered_at=self._clock(),
            message=(
                f"Alert rule '{rule.name}' triggered: {count} events in "
                f"{rule.window_seconds} seconds (threshold: {rule.threshold})"
            ),
        ))
        metrics.alerts_fired.labels(rule=rule.name).inc()
        logger.info("alert_saved", alert_id=alert.id, message=alert.message)
        return alert

    # ------------------------------------------------------------------
    # Ticker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="alert-evaluator", daemon=True,
        )
        self._thread.start()
        logger.info("evaluator_started", rules=len(self.rules),
                    interval_ms=self.interval_ms, cooldown_seconds=self.cooldown_seconds)

    def stop(self, timeout: float | None = None) -> bool:
        """Signal the ticker to stop and wait up to *timeout* seconds.

        Returns False if a tick was still running when the deadline passed.
        """
        self._stop.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        stopped = not self._thread.is_alive()
        logger.info("evaluator_stopped", clean=stopped)
        return stopped

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        interval = self.interval_ms / 1000.0
        next_tick = time.monotonic()
        while not self._stop.is_set():
            self.evaluate_rules()

            # Fixed rate. If a tick overran, skip the missed slots rather
            # than firing them back to back.
            next_tick += interval
            now = time.monotonic()
            if next_tick < now:
                missed = int((now - next_tick) // interval) + 1
                next_tick += missed * interval
                logger.warning("evaluation_ticks_missed", missed=missed)
            self._stop.wait(next_tick - now)
