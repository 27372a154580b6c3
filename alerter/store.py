"""Alert persistence.

Alerts are append-only: the evaluator creates them, nothing updates or
deletes them. The store answers two questions:

* cooldown: "most recent alert for this rule since T" (indexed by
  rule_name, triggered_at)
* read side: all alerts newest first, one page at a time

Tables:
    - alerts: one row per fired alert
"""

import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500

_COLUMNS = (
    "id, rule_name, service_name, severity, count, threshold, "
    "window_seconds, message, triggered_at, created_at"
)


@dataclass(frozen=True)
class Alert:
    rule_name: str
    count: int
    threshold: int
    window_seconds: int
    message: str
    triggered_at: float
    service_name: str | None = None
    severity: str | None = None
    id: str | None = None
    created_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ruleName": self.rule_name,
            "serviceName": self.service_name,
            "severity": self.severity,
            "count": self.count,
            "threshold": self.threshold,
            "windowSeconds": self.window_seconds,
            "message": self.message,
            "triggeredAt": _iso(self.triggered_at),
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Page:
    items: list[Alert]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.size - 1) // self.size

    def to_dict(self) -> dict:
        return {
            "content": [a.to_dict() for a in self.items],
            "page": self.page,
            "size": self.size,
            "totalElements": self.total,
            "totalPages": self.total_pages,
        }


class AlertStore:
    """Interface the evaluator and the read side depend on."""

    def save(self, alert: Alert) -> Alert:
        raise NotImplementedError

    def most_recent_alert(self, rule_name: str, since: float) -> Alert | None:
        """Newest alert for *rule_name* triggered strictly after *since*."""
        raise NotImplementedError

    def list_alerts(self, page: int = 0, size: int = 20) -> Page:
        raise NotImplementedError

    def list_alerts_for_rule(self, rule_name: str, page: int = 0, size: int = 20) -> Page:
        raise NotImplementedError


class SqliteAlertStore(AlertStore):
    """SQLite-backed alert store.

    One connection shared across threads, serialized by a lock. ``:memory:``
    works and is what the tests use.
    """

    def __init__(self, db_path: str = "data/alerts.db", clock=time.time):
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self):
        with self._lock, self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    rule_name TEXT NOT NULL,
                    service_name TEXT,
                    severity TEXT,
                    count INTEGER NOT NULL,
                    threshold INTEGER NOT NULL,
                    window_seconds INTEGER NOT NULL,
                    message TEXT,
                    triggered_at REAL NOT NULL,
                    created_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_alerts_rule_triggered
                ON alerts(rule_name, triggered_at);

                CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alerts(triggered_at);
            """)

    def save(self, alert: Alert) -> Alert:
        """Insert *alert*, filling id and created_at when absent."""
        if alert.id is None:
            alert = replace(alert, id=str(uuid.uuid4()))
        if alert.created_at is None:
            alert = replace(alert, created_at=self._clock())

        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO alerts ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    alert.id, alert.rule_name, alert.service_name, alert.severity,
                    alert.count, alert.threshold, alert.window_seconds,
                    alert.message, alert.triggered_at, alert.created_at,
                ),
            )
        logger.debug("alert_saved", alert_id=alert.id, rule=alert.rule_name)
        return alert

    def most_recent_alert(self, rule_name, since):
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM alerts "
                "WHERE rule_name = ? AND triggered_at > ? "
                "ORDER BY triggered_at DESC LIMIT 1",
                (rule_name, since),
            ).fetchone()
        return _row_to_alert(row) if row else None

    def list_alerts(self, page=0, size=20):
        return self._page("", (), page, size)

    def list_alerts_for_rule(self, rule_name, page=0, size=20):
        return self._page("WHERE rule_name = ?", (rule_name,), page, size)

    def close(self):
        with self._lock:
            self._conn.close()

    def _page(self, where: str, params: tuple, page: int, size: int) -> Page:
        if page < 0:
            raise ValueError("page must be >= 0")
        if not 1 <= size <= MAX_PAGE_SIZE:
            raise ValueError(f"size must be between 1 and {MAX_PAGE_SIZE}")

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) FROM alerts {where}", params
            ).fetchone()[0]
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM alerts {where} "
                "ORDER BY triggered_at DESC, created_at DESC LIMIT ? OFFSET ?",
                params + (size, page * size),
            ).fetchall()
        return Page(items=[_row_to_alert(r) for r in rows], page=page, size=size, total=total)


def _row_to_alert(row) -> Alert:
    (alert_id, rule_name, service_name, severity, count, threshold,
     window_seconds, message, triggered_at, created_at) = row
    return Alert(
        id=alert_id,
        rule_name=rule_name,
        service_name=service_name,
        severity=severity,
        count=count,
        threshold=threshold,
        window_seconds=window_seconds,
        message=message,
        triggered_at=triggered_at,
        created_at=created_at,
    )


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
