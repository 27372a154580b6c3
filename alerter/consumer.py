"""Kafka consumption: a bounded pool of worker threads.

Each worker owns one confluent_kafka Consumer (consumers are not
thread-safe) in the shared consumer group, so partitions are spread over
the pool. Auto-commit is off: a worker commits a record's offset only
after EventProcessor returns a result with ``acknowledge`` set.

On failure:
  * undecodable record — retrying cannot help; dead-letter it (if a
    dead-letter topic is configured) and commit
  * processing error   — retry up to max_attempts with backoff; then
    dead-letter and commit, or, with no dead-letter topic, seek back to
    the record so it is delivered again

The processor has already released the guard key by the time a
ProcessingError reaches the worker.
"""

import threading
import time

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from alerter import metrics
from alerter.events import IDEMPOTENCY_KEY_HEADER, LogEvent, header_value
from alerter.exceptions import InvalidEventError, ProcessingError

logger = structlog.get_logger(__name__)

_POLL_TIMEOUT_SECONDS = 1.0
_DLQ_FLUSH_TIMEOUT_SECONDS = 10.0


def consumer_config(bootstrap_servers: str, group_id: str) -> dict:
    return {
        "bootstrap.servers": bootstrap_servers,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    }


class DeadLetterPublisher:
    """Copies failed records, headers included, to the dead-letter topic."""

    def __init__(self, producer, topic: str):
        self.producer = producer
        self.topic = topic

    def publish(self, msg, reason: str, error: Exception | None = None) -> None:
        headers = list(msg.headers() or [])
        headers += [
            ("x-dlq-reason", reason.encode()),
            ("x-dlq-error", str(error or "").encode()),
            ("x-dlq-source", f"{msg.topic()}/{msg.partition()}/{msg.offset()}".encode()),
        ]
        self.producer.produce(self.topic, key=msg.key(), value=msg.value(), headers=headers)
        remaining = self.producer.flush(_DLQ_FLUSH_TIMEOUT_SECONDS)
        if remaining:
            raise KafkaException(
                KafkaError(KafkaError._MSG_TIMED_OUT, "dead-letter publish not confirmed")
            )
        metrics.dead_lettered.labels(reason=reason).inc()
        logger.warning("record_dead_lettered", reason=reason, topic=msg.topic(),
                       partition=msg.partition(), offset=msg.offset())


class KafkaWorker:

    def __init__(self, consumer, processor, stop_event: threading.Event,
                 dead_letter: DeadLetterPublisher | None = None,
                 max_attempts: int = 3, retry_backoff_ms: int = 1000,
                 name: str = "worker"):
        self.consumer = consumer
        self.processor = processor
        self.dead_letter = dead_letter
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff_ms / 1000.0
        self.name = name
        self._stop = stop_event
        self.log = logger.bind(worker=name)

    def run(self) -> None:
        """Poll until the stop event is set, then close the consumer."""
        handled = 0
        try:
            while not self._stop.is_set():
                msg = self.consumer.poll(_POLL_TIMEOUT_SECONDS)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    metrics.consumer_errors.inc()
                    self.log.error("consumer_error", error=str(msg.error()))
                    continue

                self.handle_message(msg)
                handled += 1
                if handled % 1000 == 0:
                    self.log.info("worker_progress", handled=handled)
        finally:
            self.consumer.close()
            self.log.info("worker_stopped", handled=handled)

    def handle_message(self, msg) -> bool:
        """Process one record. Returns True if its offset was committed."""
        try:
            event = LogEvent.from_json(msg.value(), received_at=time.time())
        except InvalidEventError as e:
            metrics.malformed_events.inc()
            self.log.warning("malformed_event", error=str(e), partition=msg.partition(),
                             offset=msg.offset())
            return self._give_up(msg, "malformed", e, retryable=False)

        key = header_value(msg.headers(), IDEMPOTENCY_KEY_HEADER)
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self.processor.process(event, idempotency_key=key)
            except ProcessingError as e:
                last_error = e
                metrics.processing_failures.inc()
                self.log.error("event_processing_failed", attempt=attempt,
                               max_attempts=self.max_attempts, error=str(e),
                               partition=msg.partition(), offset=msg.offset())
                if attempt < self.max_attempts and self._stop.wait(self.retry_backoff):
                    # shutting down mid-retry: leave it uncommitted
                    return False
                continue

            if result.acknowledge:
                return self._commit(msg)
            return False

        return self._give_up(msg, "processing_failed", last_error, retryable=True)

    def _give_up(self, msg, reason: str, error, retryable: bool) -> bool:
        if self.dead_letter is not None:
            try:
                self.dead_letter.publish(msg, reason, error)
            except KafkaException:
                self.log.exception("dead_letter_failed", reason=reason)
                self._rewind(msg)
                return False
            return self._commit(msg)

        if retryable:
            self._rewind(msg)
            return False
        # nothing to retry and nowhere to park it
        self.log.error("record_dropped", reason=reason, partition=msg.partition(),
                       offset=msg.offset())
        return self._commit(msg)

    def _commit(self, msg) -> bool:
        try:
            self.consumer.commit(message=msg, asynchronous=False)
        except KafkaException as e:
            # The record will be redelivered; the guard absorbs it if it
            # carried an idempotency key.
            self.log.error("commit_failed", error=str(e), partition=msg.partition(),
                           offset=msg.offset())
            return False
        return True

    def _rewind(self, msg) -> None:
        self.consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        self.log.info("record_rewound", partition=msg.partition(), offset=msg.offset())


class ConsumerPool:
    """Fixed-size pool of KafkaWorker threads sharing one stop event."""

    def __init__(self, processor, topic: str, consumer_factory, concurrency: int = 3,
                 dead_letter: DeadLetterPublisher | None = None,
                 max_attempts: int = 3, retry_backoff_ms: int = 1000):
        self.processor = processor
        self.topic = topic
        self.consumer_factory = consumer_factory
        self.concurrency = concurrency
        self.dead_letter = dead_letter
        self.max_attempts = max_attempts
        self.retry_backoff_ms = retry_backoff_ms
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        self._stop.clear()
        for i in range(self.concurrency):
            consumer = self.consumer_factory()
            consumer.subscribe([self.topic])
            worker = KafkaWorker(
                consumer, self.processor, self._stop,
                dead_letter=self.dead_letter,
                max_attempts=self.max_attempts,
                retry_backoff_ms=self.retry_backoff_ms,
                name=f"consumer-{i}",
            )
            thread = threading.Thread(target=worker.run, name=worker.name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("consumer_pool_started", topic=self.topic, concurrency=self.concurrency)

    def stop(self, timeout: float | None = None) -> bool:
        """Stop accepting records and wait for in-flight ones until the deadline.

        Returns False if any worker was still busy when the deadline passed;
        its record stays uncommitted and is redelivered to the group.
        """
        self._stop.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("consumer_pool_stop_timeout", still_running=alive)
        else:
            logger.info("consumer_pool_stopped")
        self._threads = [t for t in self._threads if t.is_alive()]
        return not alive


def kafka_consumer_factory(bootstrap_servers: str, group_id: str):
    config = consumer_config(bootstrap_servers, group_id)
    return lambda: Consumer(config)


def dead_letter_publisher(bootstrap_servers: str, topic: str | None) -> DeadLetterPublisher | None:
    if not topic:
        return None
    producer = Producer({"bootstrap.servers": bootstrap_servers, "acks": "all"})
    return DeadLetterPublisher(producer, topic)
