"""Idempotent consumption guard.

Kafka delivers at least once, so the same logical event can arrive more
than once (producer retries, consumer rebalances before a commit). The
guard records each idempotency key the first time it is seen and rejects
later copies until the record expires.

Acquisition is a single atomic create-if-absent at the store. A separate
exists-then-set would let two workers both claim the same key and count
the event twice.
"""

import threading
import time

import structlog

logger = structlog.get_logger(__name__)

KEY_PREFIX = "alerter:idempotency:"
DEFAULT_TTL_SECONDS = 24 * 3600
# Memory guard drops expired records at most this often.
_SWEEP_INTERVAL_SECONDS = 60


class IdempotencyGuard:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    def try_acquire(self, key: str | None) -> bool:
        """True if the event should be processed.

        No key means no dedup was requested, so the event always passes.
        False means a duplicate: skip processing but still acknowledge it.
        """
        if not key or not key.strip():
            return True
        if self._set_if_absent(KEY_PREFIX + key):
            logger.debug("idempotency_key_acquired", key=key)
            return True
        logger.info("duplicate_event_skipped", key=key)
        return False

    def release(self, key: str | None) -> None:
        """Forget *key* so a redelivered copy is processed as new.

        Called when processing fails after try_acquire succeeded.
        """
        if not key or not key.strip():
            return
        self._delete(KEY_PREFIX + key)
        logger.debug("idempotency_key_released", key=key)

    def _set_if_absent(self, storage_key: str) -> bool:
        raise NotImplementedError

    def _delete(self, storage_key: str) -> None:
        raise NotImplementedError


class RedisIdempotencyGuard(IdempotencyGuard):
    def __init__(self, redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        super().__init__(ttl_seconds)
        self._redis = redis

    def _set_if_absent(self, storage_key):
        # SET NX EX returns True only when the key was freshly created
        return bool(self._redis.set(storage_key, "1", nx=True, ex=self.ttl_seconds))

    def _delete(self, storage_key):
        self._redis.delete(storage_key)


class MemoryIdempotencyGuard(IdempotencyGuard):
    """Single-process guard. Check and set happen under one lock."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock=time.time):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._expires_at: dict[str, float] = {}
        self._next_sweep = clock() + _SWEEP_INTERVAL_SECONDS

    def _set_if_absent(self, storage_key):
        now = self._clock()
        with self._lock:
            expires_at = self._expires_at.get(storage_key)
            if expires_at is not None and expires_at > now:
                return False
            if now >= self._next_sweep:
                self._expires_at = {k: exp for k, exp in self._expires_at.items() if exp > now}
                self._next_sweep = now + _SWEEP_INTERVAL_SECONDS
            self._expires_at[storage_key] = now + self.ttl_seconds
            return True

    def _delete(self, storage_key):
        with self._lock:
            self._expires_at.pop(storage_key, None)

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for exp in self._expires_at.values() if exp > now)
