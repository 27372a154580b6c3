"""Tests for EventProcessor — dedup, multi-rule appends, guard release."""

from unittest.mock import MagicMock

import pytest

from alerter.exceptions import ProcessingError
from alerter.processor import EventProcessor

from conftest import ALL_LOGS, HIGH_ERROR_RATE, SERVICE_DOWN, T0, make_event


@pytest.fixture
def processor(rule_set, guard, counter):
    return EventProcessor(rule_set, guard, counter)


class TestProcess:
    def test_appends_to_every_matched_rule(self, processor, counter):
        result = processor.process(make_event(service="order-service", severity="ERROR"))
        assert result.acknowledge
        assert result.matched_rules == ["high-error-rate", "service-down"]
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1
        assert counter.count(SERVICE_DOWN.window_key, 30) == 1
        assert counter.count(ALL_LOGS.window_key, 60) == 0

    def test_unmatched_event_is_still_acknowledged(self, processor):
        result = processor.process(make_event(service="payment-service", severity="INFO"))
        assert result.acknowledge
        assert result.matched_rules == []

    def test_uses_event_timestamp_not_arrival(self, processor, counter):
        processor.process(make_event(ts=T0 - 45))
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1
        assert counter.count(HIGH_ERROR_RATE.window_key, 30) == 0

    def test_global_rule_sees_all_services_in_one_window(self, processor, counter):
        processor.process(make_event(service="order-service"))
        processor.process(make_event(service="payment-service"))
        processor.process(make_event(service="user-service"))
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 3


class TestDuplicates:
    def test_duplicate_delivery_counts_once(self, processor, counter):
        event = make_event(service="payment-service")
        first = processor.process(event, idempotency_key="req-1")
        second = processor.process(event, idempotency_key="req-1")
        assert not first.duplicate
        assert second.duplicate
        assert second.acknowledge
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1

    def test_key_from_event_body(self, processor, counter):
        event = make_event(key="body-key")
        processor.process(event)
        assert processor.process(event).duplicate
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1

    def test_no_key_means_no_dedup(self, processor, counter):
        event = make_event(service="payment-service")
        processor.process(event)
        processor.process(event)
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 2


class TestFailure:
    def test_failure_releases_guard_and_raises(self, rule_set, guard):
        counter = MagicMock()
        counter.append.side_effect = ConnectionError("redis down")
        processor = EventProcessor(rule_set, guard, counter)

        with pytest.raises(ProcessingError) as excinfo:
            processor.process(make_event(), idempotency_key="req-9")
        assert excinfo.value.idempotency_key == "req-9"
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        # redelivery is treated as new, not a duplicate
        assert guard.try_acquire("req-9") is True

    def test_retry_after_failure_is_processed(self, rule_set, guard, counter):
        flaky = MagicMock(wraps=counter)
        flaky.append.side_effect = [ConnectionError("blip"), None, None]
        processor = EventProcessor(rule_set, guard, flaky)

        with pytest.raises(ProcessingError):
            processor.process(make_event(service="order-service"), idempotency_key="req-2")
        result = processor.process(make_event(service="order-service"), idempotency_key="req-2")
        assert not result.duplicate
        assert result.matched_rules == ["high-error-rate", "service-down"]

    def test_guard_failure_is_processing_error(self, rule_set, counter):
        guard = MagicMock()
        guard.try_acquire.side_effect = ConnectionError("redis down")
        processor = EventProcessor(rule_set, guard, counter)
        with pytest.raises(ProcessingError):
            processor.process(make_event(), idempotency_key="k")
        guard.release.assert_not_called()

    def test_release_failure_still_raises_processing_error(self, rule_set):
        guard = MagicMock()
        guard.try_acquire.return_value = True
        guard.release.side_effect = ConnectionError("still down")
        counter = MagicMock()
        counter.append.side_effect = ConnectionError("down")
        processor = EventProcessor(rule_set, guard, counter)
        with pytest.raises(ProcessingError):
            processor.process(make_event(), idempotency_key="k")
