"""Sliding window counters keyed by rule window key.

Each window is a time-ordered multiset of event timestamps. Entries are
stored under their own timestamp, not arrival time, so producer buffering
and out-of-order delivery do not distort the count.

count() filters by range at query time; prune() is lagging cleanup that
only drops entries older than twice the window. A count taken with a
slightly stale "now" therefore never loses a boundary entry to a
concurrent prune.

Two backends share the same interface:

* RedisSlidingWindow: one sorted set per key (score = epoch seconds).
  ZADD is atomic, so any number of consumer processes can append to the
  same window. This is the production backend.
* MemorySlidingWindow: sorted lists behind a lock. Same semantics within
  one process; used for single-instance runs and tests.
"""

import math
import threading
import time
import uuid
from bisect import bisect_left, bisect_right, insort

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_KEY_TTL_SECONDS = 300
# Prune keeps this many windows' worth of history.
PRUNE_MARGIN = 2


class SlidingWindowCounter:
    """Base counter. Subclasses implement the three storage primitives."""

    def __init__(self, key_ttl_seconds: int = DEFAULT_KEY_TTL_SECONDS, clock=time.time):
        self.key_ttl_seconds = key_ttl_seconds
        self._clock = clock

    def append(self, window_key: str, timestamp: float) -> None:
        """Record one occurrence at *timestamp* and refresh the key's TTL."""
        if not math.isfinite(timestamp):
            raise ValueError(f"window timestamp must be finite, got {timestamp!r}")
        self._add(window_key, timestamp)

    def count(self, window_key: str, window_seconds: int) -> int:
        """Entries with timestamp in [now - window_seconds, now]."""
        now = self._clock()
        return self._count_range(window_key, now - window_seconds, now)

    def prune(self, window_key: str, window_seconds: int) -> int:
        """Drop entries older than PRUNE_MARGIN windows. Returns how many."""
        cutoff = self._clock() - PRUNE_MARGIN * window_seconds
        removed = self._remove_before(window_key, cutoff)
        if removed:
            logger.debug("window_pruned", window_key=window_key, removed=removed)
        return removed

    def _add(self, window_key: str, timestamp: float) -> None:
        raise NotImplementedError

    def _count_range(self, window_key: str, start: float, end: float) -> int:
        raise NotImplementedError

    def _remove_before(self, window_key: str, cutoff: float) -> int:
        raise NotImplementedError


class RedisSlidingWindow(SlidingWindowCounter):
    """Sorted-set windows in Redis.

    Members are random uuids so two events with the same timestamp are two
    entries, not one.
    """

    def __init__(self, redis, key_ttl_seconds: int = DEFAULT_KEY_TTL_SECONDS,
                 clock=time.time):
        super().__init__(key_ttl_seconds, clock)
        self._redis = redis

    def _add(self, window_key, timestamp):
        pipe = self._redis.pipeline(transaction=True)
        pipe.zadd(window_key, {uuid.uuid4().hex: timestamp})
        pipe.expire(window_key, self.key_ttl_seconds)
        pipe.execute()

    def _count_range(self, window_key, start, end):
        return int(self._redis.zcount(window_key, start, end) or 0)

    def _remove_before(self, window_key, cutoff):
        # "(" makes the bound exclusive: strictly older than cutoff
        return int(self._redis.zremrangebyscore(window_key, "-inf", f"({cutoff}") or 0)


class MemorySlidingWindow(SlidingWindowCounter):
    """In-process windows: a sorted list of timestamps per key.

    The key TTL is enforced lazily on access, and abandoned keys are swept
    on every append.
    """

    def __init__(self, key_ttl_seconds: int = DEFAULT_KEY_TTL_SECONDS, clock=time.time):
        super().__init__(key_ttl_seconds, clock)
        self._lock = threading.Lock()
        self._windows: dict[str, list[float]] = {}
        self._expires_at: dict[str, float] = {}

    def _add(self, window_key, timestamp):
        now = self._clock()
        with self._lock:
            self._sweep(now)
            insort(self._windows.setdefault(window_key, []), timestamp)
            self._expires_at[window_key] = now + self.key_ttl_seconds

    def _count_range(self, window_key, start, end):
        with self._lock:
            entries = self._live(window_key)
            return bisect_right(entries, end) - bisect_left(entries, start)

    def _remove_before(self, window_key, cutoff):
        with self._lock:
            entries = self._live(window_key)
            idx = bisect_left(entries, cutoff)
            del entries[:idx]
            return idx

    def keys(self) -> list[str]:
        with self._lock:
            self._sweep(self._clock())
            return sorted(self._windows)

    def _live(self, window_key) -> list[float]:
        """Entries for a key, or an empty list if the key expired. Caller holds the lock."""
        expires_at = self._expires_at.get(window_key)
        if expires_at is None:
            return []
        if expires_at <= self._clock():
            self._drop(window_key)
            return []
        return self._windows[window_key]

    def _sweep(self, now):
        for key in [k for k, exp in self._expires_at.items() if exp <= now]:
            self._drop(key)

    def _drop(self, window_key):
        self._windows.pop(window_key, None)
        self._expires_at.pop(window_key, None)
