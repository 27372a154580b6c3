"""Alerting service entry point.

Consumes log events from Kafka, keeps per-rule sliding windows in Redis and
persists fired alerts to SQLite. The evaluator ticker and the consumer
pool run side by side in one process and are stopped independently on
SIGINT/SIGTERM.

Usage:
    python -m alerter.main run
    python -m alerter.main --config config/alerter.yml run --bootstrap-servers kafka-1:29092
    python -m alerter.main rules
    python -m alerter.main alerts --page 0 --size 20
    python -m alerter.main evaluate
"""

import argparse
import json
import signal
import sys
import time

import redis
import structlog
from prometheus_client import start_http_server

from alerter.config import load_settings, override
from alerter.consumer import ConsumerPool, dead_letter_publisher, kafka_consumer_factory
from alerter.evaluator import AlertEvaluator
from alerter.exceptions import ConfigError
from alerter.idempotency import MemoryIdempotencyGuard, RedisIdempotencyGuard
from alerter.logs import setup_logging
from alerter.processor import EventProcessor
from alerter.sliding_window import MemorySlidingWindow, RedisSlidingWindow
from alerter.store import SqliteAlertStore

logger = structlog.get_logger(__name__)

MEMORY_BACKEND = "memory"

running = True


def _shutdown(sig, frame):
    global running
    logger.info("shutdown_requested", signal=sig)
    running = False


def build_backends(settings):
    """Window counter and idempotency guard for the configured backend."""
    key_ttl = settings.effective_key_ttl()
    guard_ttl = settings.idempotency.ttl_hours * 3600
    if settings.redis.url == MEMORY_BACKEND:
        return MemorySlidingWindow(key_ttl), MemoryIdempotencyGuard(guard_ttl)

    client = redis.Redis.from_url(settings.redis.url, decode_responses=True)
    return RedisSlidingWindow(client, key_ttl), RedisIdempotencyGuard(client, guard_ttl)


def build_evaluator(settings, counter, store) -> AlertEvaluator:
    return AlertEvaluator(
        settings.rule_set(), counter, store,
        interval_ms=settings.alerting.evaluation_interval_ms,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_run(settings, args) -> int:
    settings = override(
        settings, "kafka",
        bootstrap_servers=args.bootstrap_servers,
        topic=args.topic,
        group_id=args.group_id,
        concurrency=args.concurrency,
    )
    rules = settings.rule_set()
    if not len(rules):
        logger.warning("no_rules_configured")

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    if settings.metrics.port:
        start_http_server(settings.metrics.port)
        logger.info("metrics_server_started", port=settings.metrics.port)

    counter, guard = build_backends(settings)
    store = SqliteAlertStore(settings.store.sqlite_path)
    evaluator = build_evaluator(settings, counter, store)

    kafka = settings.kafka
    pool = ConsumerPool(
        EventProcessor(rules, guard, counter),
        kafka.topic,
        kafka_consumer_factory(kafka.bootstrap_servers, kafka.group_id),
        concurrency=kafka.concurrency,
        dead_letter=dead_letter_publisher(kafka.bootstrap_servers, kafka.dead_letter_topic),
        max_attempts=kafka.max_attempts,
        retry_backoff_ms=kafka.retry_backoff_ms,
    )

    for rule in rules:
        logger.info("rule_loaded", **rule.to_dict())

    evaluator.start()
    pool.start()
    try:
        while running:
            time.sleep(0.5)
    finally:
        pool_clean = pool.stop(args.shutdown_timeout)
        evaluator_clean = evaluator.stop(args.shutdown_timeout)
        store.close()
    return 0 if pool_clean and evaluator_clean else 1


def cmd_rules(settings, args) -> int:
    print(json.dumps(settings.rule_set().describe(), indent=2))
    return 0


def cmd_alerts(settings, args) -> int:
    store = SqliteAlertStore(settings.store.sqlite_path)
    try:
        if args.rule:
            page = store.list_alerts_for_rule(args.rule, args.page, args.size)
        else:
            page = store.list_alerts(args.page, args.size)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        store.close()
    print(json.dumps(page.to_dict(), indent=2))
    return 0


def cmd_evaluate(settings, args) -> int:
    counter, _ = build_backends(settings)
    store = SqliteAlertStore(settings.store.sqlite_path)
    try:
        fired = build_evaluator(settings, counter, store).evaluate_rules() or []
    finally:
        store.close()
    print(json.dumps([a.to_dict() for a in fired], indent=2))
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Log threshold alerting service")
    parser.add_argument("--config", default=None,
                        help="YAML config (default: config/alerter.yml if present)")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--log-format", choices=["json", "console"], default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Consume events and evaluate rules")
    run.add_argument("--bootstrap-servers", default=None)
    run.add_argument("--topic", default=None)
    run.add_argument("--group-id", default=None)
    run.add_argument("--concurrency", type=int, default=None)
    run.add_argument("--shutdown-timeout", type=float, default=10.0,
                     help="Seconds to wait for in-flight work on shutdown")
    run.set_defaults(func=cmd_run)

    rules = sub.add_parser("rules", help="Print configured rules")
    rules.set_defaults(func=cmd_rules)

    alerts = sub.add_parser("alerts", help="Print stored alerts, newest first")
    alerts.add_argument("--page", type=int, default=0)
    alerts.add_argument("--size", type=int, default=20)
    alerts.add_argument("--rule", default=None, help="Only alerts for this rule")
    alerts.set_defaults(func=cmd_alerts)

    evaluate = sub.add_parser("evaluate", help="Run a single evaluation tick")
    evaluate.set_defaults(func=cmd_evaluate)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
        settings = override(settings, "logging", level=args.log_level, format=args.log_format)
        if args.command == "run" and args.concurrency is not None and args.concurrency <= 0:
            raise ConfigError("--concurrency must be positive")
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.logging.level, settings.logging.format)
    return args.func(settings, args)


if __name__ == "__main__":
    sys.exit(main())
