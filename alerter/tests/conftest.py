"""Shared fixtures: a controllable clock and wired-up in-process backends."""

import pytest

from alerter.events import LogEvent, Severity
from alerter.idempotency import MemoryIdempotencyGuard
from alerter.rules import AlertRule, RuleSet
from alerter.sliding_window import MemorySlidingWindow
from alerter.store import SqliteAlertStore

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_event(service="order-service", severity="ERROR", ts=T0, key=None, **extra):
    """Helper to build a LogEvent with sane defaults."""
    return LogEvent(
        service_name=service,
        severity=Severity(severity),
        message=extra.pop("message", "boom"),
        timestamp=ts,
        idempotency_key=key,
        **extra,
    )


HIGH_ERROR_RATE = AlertRule("high-error-rate", threshold=10, window_seconds=60, severity="ERROR")
SERVICE_DOWN = AlertRule("service-down", threshold=5, window_seconds=30,
                         service_name="order-service", severity="ERROR")
ALL_LOGS = AlertRule("all-logs", threshold=100, window_seconds=60, service_name="user-service")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counter(clock):
    return MemorySlidingWindow(clock=clock)


@pytest.fixture
def guard(clock):
    return MemoryIdempotencyGuard(clock=clock)


@pytest.fixture
def store(clock):
    s = SqliteAlertStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def rule_set():
    return RuleSet([HIGH_ERROR_RATE, SERVICE_DOWN, ALL_LOGS], cooldown_seconds=60)
