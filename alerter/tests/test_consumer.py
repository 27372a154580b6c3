"""Tests for the Kafka worker — commit discipline, retries, dead-lettering."""

import json
import threading
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaError, KafkaException

from alerter.consumer import ConsumerPool, DeadLetterPublisher, KafkaWorker, consumer_config
from alerter.exceptions import ProcessingError
from alerter.processor import EventProcessor, ProcessResult

from conftest import HIGH_ERROR_RATE, T0


def _message(payload=None, headers=None, raw=None, offset=42):
    msg = MagicMock()
    if raw is None:
        payload = payload or {
            "serviceName": "order-service",
            "severity": "ERROR",
            "message": "Order failed",
            "timestamp": T0,
        }
        raw = json.dumps(payload).encode()
    msg.value.return_value = raw
    msg.key.return_value = b"order-service"
    msg.headers.return_value = headers
    msg.topic.return_value = "logs"
    msg.partition.return_value = 1
    msg.offset.return_value = offset
    msg.error.return_value = None
    return msg


def _worker(processor, dead_letter=None, max_attempts=3):
    consumer = MagicMock()
    worker = KafkaWorker(consumer, processor, threading.Event(), dead_letter=dead_letter,
                         max_attempts=max_attempts, retry_backoff_ms=0)
    return worker, consumer


# ---------------------------------------------------------------------------
# Happy path and duplicates
# ---------------------------------------------------------------------------

class TestCommit:
    def test_processed_event_is_committed(self, rule_set, guard, counter):
        worker, consumer = _worker(EventProcessor(rule_set, guard, counter))
        msg = _message()
        assert worker.handle_message(msg) is True
        consumer.commit.assert_called_once_with(message=msg, asynchronous=False)
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1

    def test_duplicate_is_committed_but_counted_once(self, rule_set, guard, counter):
        worker, consumer = _worker(EventProcessor(rule_set, guard, counter))
        headers = [("X-Idempotency-Key", b"req-1")]
        assert worker.handle_message(_message(headers=headers))
        assert worker.handle_message(_message(headers=headers, offset=43))
        assert consumer.commit.call_count == 2
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1

    def test_header_key_is_passed_to_processor(self):
        processor = MagicMock()
        processor.process.return_value = ProcessResult(acknowledge=True)
        worker, _ = _worker(processor)
        worker.handle_message(_message(headers=[("X-Idempotency-Key", b"abc")]))
        _, kwargs = processor.process.call_args
        assert kwargs["idempotency_key"] == "abc"

    def test_no_commit_without_acknowledge(self):
        processor = MagicMock()
        processor.process.return_value = ProcessResult(acknowledge=False)
        worker, consumer = _worker(processor)
        assert worker.handle_message(_message()) is False
        consumer.commit.assert_not_called()

    def test_commit_failure_is_reported(self):
        processor = MagicMock()
        processor.process.return_value = ProcessResult(acknowledge=True)
        worker, consumer = _worker(processor)
        consumer.commit.side_effect = KafkaException(KafkaError(KafkaError._TRANSPORT))
        assert worker.handle_message(_message()) is False


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    def setup_method(self):
        self.processor = MagicMock()
        self.processor.process.side_effect = ProcessingError("redis down", "k")

    def test_retries_then_rewinds_without_dead_letter(self):
        worker, consumer = _worker(self.processor, max_attempts=3)
        msg = _message()
        assert worker.handle_message(msg) is False
        assert self.processor.process.call_count == 3
        consumer.commit.assert_not_called()
        (tp,), _ = consumer.seek.call_args
        assert (tp.topic, tp.partition, tp.offset) == ("logs", 1, 42)

    def test_single_attempt_variant(self):
        worker, consumer = _worker(self.processor, max_attempts=1)
        worker.handle_message(_message())
        assert self.processor.process.call_count == 1
        consumer.seek.assert_called_once()

    def test_recovers_on_retry(self):
        self.processor.process.side_effect = [
            ProcessingError("blip"), ProcessResult(acknowledge=True),
        ]
        worker, consumer = _worker(self.processor)
        assert worker.handle_message(_message()) is True
        consumer.commit.assert_called_once()
        consumer.seek.assert_not_called()

    def test_exhausted_retries_go_to_dead_letter(self):
        dead_letter = MagicMock()
        worker, consumer = _worker(self.processor, dead_letter=dead_letter)
        msg = _message()
        assert worker.handle_message(msg) is True
        dead_letter.publish.assert_called_once()
        assert dead_letter.publish.call_args[0][1] == "processing_failed"
        consumer.commit.assert_called_once_with(message=msg, asynchronous=False)

    def test_dead_letter_failure_rewinds(self):
        dead_letter = MagicMock()
        dead_letter.publish.side_effect = KafkaException(KafkaError(KafkaError._MSG_TIMED_OUT))
        worker, consumer = _worker(self.processor, dead_letter=dead_letter)
        assert worker.handle_message(_message()) is False
        consumer.commit.assert_not_called()
        consumer.seek.assert_called_once()

    def test_stop_during_backoff_leaves_record_uncommitted(self):
        stop = threading.Event()
        stop.set()
        consumer = MagicMock()
        worker = KafkaWorker(consumer, self.processor, stop, max_attempts=3,
                             retry_backoff_ms=10)
        assert worker.handle_message(_message()) is False
        assert self.processor.process.call_count == 1
        consumer.commit.assert_not_called()
        consumer.seek.assert_not_called()


class TestMalformed:
    @pytest.mark.parametrize("raw", [b"{not json", b'{"severity": "ERROR"}'])
    def test_malformed_without_dead_letter_is_dropped(self, raw):
        processor = MagicMock()
        worker, consumer = _worker(processor)
        assert worker.handle_message(_message(raw=raw)) is True
        processor.process.assert_not_called()
        consumer.seek.assert_not_called()

    def test_integer_body_key_is_processed_and_deduplicated(self, rule_set, guard, counter):
        worker, consumer = _worker(EventProcessor(rule_set, guard, counter))
        payload = {"serviceName": "a", "severity": "ERROR", "message": "m",
                   "timestamp": T0, "idempotencyKey": 12345}
        assert worker.handle_message(_message(payload)) is True
        assert worker.handle_message(_message(payload, offset=43)) is True
        consumer.seek.assert_not_called()
        assert counter.count(HIGH_ERROR_RATE.window_key, 60) == 1

    @pytest.mark.parametrize("raw", [
        b'{"serviceName": "a", "severity": "ERROR", "message": "m", "idempotencyKey": ["k"]}',
        b'{"serviceName": "a", "severity": "ERROR", "message": "m", "timestamp": "nan"}',
        b'{"serviceName": "a", "severity": "ERROR", "message": "m", "timestamp": NaN}',
    ])
    def test_unusable_fields_never_stall_the_partition(self, raw):
        processor = MagicMock()
        worker, consumer = _worker(processor)
        assert worker.handle_message(_message(raw=raw)) is True
        processor.process.assert_not_called()
        consumer.seek.assert_not_called()
        consumer.commit.assert_called_once()

    def test_malformed_is_dead_lettered(self):
        dead_letter = MagicMock()
        worker, consumer = _worker(MagicMock(), dead_letter=dead_letter)
        worker.handle_message(_message(raw=b"garbage"))
        assert dead_letter.publish.call_args[0][1] == "malformed"
        consumer.commit.assert_called_once()


# ---------------------------------------------------------------------------
# Dead-letter publisher
# ---------------------------------------------------------------------------

class TestDeadLetterPublisher:
    def test_publishes_raw_record_with_reason_headers(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        msg = _message(headers=[("X-Idempotency-Key", b"k")])
        DeadLetterPublisher(producer, "logs.dlq").publish(msg, "malformed", ValueError("bad"))

        _, kwargs = producer.produce.call_args
        assert producer.produce.call_args[0][0] == "logs.dlq"
        assert kwargs["value"] == msg.value()
        headers = dict(kwargs["headers"])
        assert headers["X-Idempotency-Key"] == b"k"
        assert headers["x-dlq-reason"] == b"malformed"
        assert headers["x-dlq-source"] == b"logs/1/42"

    def test_unconfirmed_publish_raises(self):
        producer = MagicMock()
        producer.flush.return_value = 1
        with pytest.raises(KafkaException):
            DeadLetterPublisher(producer, "logs.dlq").publish(_message(), "malformed")


# ---------------------------------------------------------------------------
# Poll loop and pool
# ---------------------------------------------------------------------------

class TestRunLoop:
    def test_run_handles_messages_and_closes(self):
        stop = threading.Event()
        processor = MagicMock()
        processor.process.return_value = ProcessResult(acknowledge=True)

        eof = MagicMock()
        eof.error.return_value.code.return_value = KafkaError._PARTITION_EOF
        polled = [None, eof, _message()]

        consumer = MagicMock()

        def poll(timeout):
            if polled:
                return polled.pop(0)
            stop.set()
            return None

        consumer.poll.side_effect = poll
        KafkaWorker(consumer, processor, stop).run()
        assert processor.process.call_count == 1
        consumer.close.assert_called_once()

    def test_consumer_config_disables_auto_commit(self):
        config = consumer_config("kafka:9092", "alert-service")
        assert config["enable.auto.commit"] is False
        assert config["group.id"] == "alert-service"


class TestConsumerPool:
    def test_starts_one_consumer_per_worker_and_stops(self):
        consumers = []

        def factory():
            consumer = MagicMock()
            consumer.poll.return_value = None
            consumers.append(consumer)
            return consumer

        pool = ConsumerPool(MagicMock(), "logs", factory, concurrency=3)
        pool.start()
        assert pool.stop(timeout=10) is True
        assert len(consumers) == 3
        for consumer in consumers:
            consumer.subscribe.assert_called_once_with(["logs"])
            consumer.close.assert_called_once()
