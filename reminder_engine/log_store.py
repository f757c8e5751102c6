"""
Invoice Reminder Engine -- Reminder Log Store

Durable record of every reminder the engine attempted.  Each row is one
delivery attempt-set for one invoice on one channel:

    PENDING -> SENT
            |-> FAILED

Rows are created before dispatch and updated in place afterwards; they are
never deleted.  The eligibility checks rebuild "how many sent" and "when
was the last one" from these rows alone.

Two implementations share the same interface:
    InMemoryReminderLogStore  - dict-backed, used by tests and dry runs
    SqliteReminderLogStore    - sqlite3 file with WAL journaling

LogBudgetChecker sums the cost of sent rows for the current month and
compares it against the tenant's monthly limit.

Usage:
    from reminder_engine.log_store import SqliteReminderLogStore

    store = SqliteReminderLogStore("output/reminder_logs.db")
    log = store.create_log(log)
    log.status = ReminderStatus.SENT
    store.update_log(log)
    history = store.find_logs_by_invoice_id("INV-1")
"""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .models import Channel, EscalationLevel, ReminderLog, ReminderStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS reminder_logs (
    log_id              TEXT PRIMARY KEY,
    tenant_id           TEXT NOT NULL DEFAULT 'default',
    invoice_id          TEXT NOT NULL,
    channel             TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    message             TEXT NOT NULL DEFAULT '',
    escalation_level    TEXT NOT NULL,
    sent_at             TEXT NOT NULL,
    delivered_at        TEXT,
    error               TEXT,
    cost                REAL,
    message_id          TEXT,
    attempts            INTEGER NOT NULL DEFAULT 0,
    retryable           INTEGER
);

CREATE INDEX IF NOT EXISTS idx_logs_invoice ON reminder_logs(invoice_id);
CREATE INDEX IF NOT EXISTS idx_logs_tenant_sent ON reminder_logs(tenant_id, status, sent_at);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _log_to_row(log: ReminderLog) -> dict[str, Any]:
    return {
        "log_id": log.log_id,
        "tenant_id": log.tenant_id,
        "invoice_id": log.invoice_id,
        "channel": log.channel.value,
        "status": log.status.value,
        "message": log.message,
        "escalation_level": log.escalation_level.value,
        "sent_at": _iso(log.sent_at),
        "delivered_at": _iso(log.delivered_at),
        "error": log.error,
        "cost": log.cost,
        "message_id": log.message_id,
        "attempts": log.attempts,
        "retryable": None if log.retryable is None else int(log.retryable),
    }


def _row_to_log(row: dict[str, Any]) -> ReminderLog:
    return ReminderLog(
        log_id=row["log_id"],
        tenant_id=row["tenant_id"],
        invoice_id=row["invoice_id"],
        channel=Channel(row["channel"]),
        status=ReminderStatus(row["status"]),
        message=row["message"],
        escalation_level=EscalationLevel(row["escalation_level"]),
        sent_at=_parse_dt(row["sent_at"]),
        delivered_at=_parse_dt(row["delivered_at"]),
        error=row["error"],
        cost=row["cost"],
        message_id=row["message_id"],
        attempts=row["attempts"],
        retryable=None if row.get("retryable") is None else bool(row["retryable"]),
    )


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """[first instant of moment's month, first instant of the next month)."""
    start = datetime(moment.year, moment.month, 1)
    if moment.month == 12:
        end = datetime(moment.year + 1, 1, 1)
    else:
        end = datetime(moment.year, moment.month + 1, 1)
    return start, end


def _stats_from_logs(logs: list[ReminderLog]) -> dict[str, Any]:
    counts_by_status: dict[str, int] = {}
    counts_by_channel: dict[str, int] = {}
    total_cost = 0.0
    for log in logs:
        counts_by_status[log.status.value] = counts_by_status.get(log.status.value, 0) + 1
        counts_by_channel[log.channel.value] = counts_by_channel.get(log.channel.value, 0) + 1
        if log.is_sent and log.cost:
            total_cost += log.cost
    return {
        "total_logs": len(logs),
        "counts_by_status": counts_by_status,
        "counts_by_channel": counts_by_channel,
        "total_cost": total_cost,
    }


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryReminderLogStore:
    """Dict-backed store.  Safe to share between worker threads."""

    def __init__(self):
        self._logs: dict[str, ReminderLog] = {}
        self._lock = threading.Lock()

    def create_log(self, log: ReminderLog) -> ReminderLog:
        if not log.log_id:
            log.log_id = str(uuid.uuid4())
        with self._lock:
            if log.log_id in self._logs:
                raise ValueError(f"Duplicate log_id {log.log_id}")
            self._logs[log.log_id] = copy.copy(log)
        return log

    def update_log(self, log: ReminderLog) -> bool:
        with self._lock:
            if log.log_id not in self._logs:
                return False
            self._logs[log.log_id] = copy.copy(log)
            return True

    def find_logs_by_invoice_id(self, invoice_id: str) -> list[ReminderLog]:
        with self._lock:
            logs = [copy.copy(l) for l in self._logs.values() if l.invoice_id == invoice_id]
        return sorted(logs, key=lambda l: l.sent_at)

    def count_sent(self, invoice_id: str) -> int:
        return sum(1 for log in self.find_logs_by_invoice_id(invoice_id) if log.is_sent)

    def sum_sent_cost(self, tenant_id: str, start: datetime, end: datetime) -> float:
        with self._lock:
            return sum(
                log.cost or 0.0
                for log in self._logs.values()
                if log.tenant_id == tenant_id and log.is_sent and start <= log.sent_at < end
            )

    def all_logs(self) -> list[ReminderLog]:
        with self._lock:
            logs = [copy.copy(l) for l in self._logs.values()]
        return sorted(logs, key=lambda l: l.sent_at)

    def get_stats(self) -> dict[str, Any]:
        return _stats_from_logs(self.all_logs())


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

class SqliteReminderLogStore:
    """Reminder log backed by a SQLite file.

    Each method opens and closes its own connection, so one instance can be
    shared across the orchestrator's worker threads.  WAL journaling lets
    status queries read while a tick is writing.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            # Files created before the retryable column existed
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(reminder_logs)")}
            if "retryable" not in columns:
                conn.execute("ALTER TABLE reminder_logs ADD COLUMN retryable INTEGER")
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_log(self, log: ReminderLog) -> ReminderLog:
        """Insert a new row.  Assigns a log_id when the caller left it blank."""
        if not log.log_id:
            log.log_id = str(uuid.uuid4())
        row = _log_to_row(log)
        columns = list(row.keys())
        placeholders = ", ".join(["?"] * len(columns))
        col_str = ", ".join(columns)

        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT INTO reminder_logs ({col_str}) VALUES ({placeholders})",
                [row[c] for c in columns],
            )
            conn.commit()
        finally:
            conn.close()
        return log

    def update_log(self, log: ReminderLog) -> bool:
        """Overwrite the mutable fields of an existing row.

        Returns False if no row has this log_id.
        """
        row = _log_to_row(log)
        updates = {k: v for k, v in row.items() if k not in ("log_id", "invoice_id", "channel", "tenant_id")}
        set_clause = ", ".join(f"{k} = ?" for k in updates)

        conn = self._get_conn()
        try:
            result = conn.execute(
                f"UPDATE reminder_logs SET {set_clause} WHERE log_id = ?",
                list(updates.values()) + [log.log_id],
            )
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_logs_by_invoice_id(self, invoice_id: str) -> list[ReminderLog]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM reminder_logs WHERE invoice_id = ? ORDER BY sent_at ASC",
                (invoice_id,),
            ).fetchall()
            return [_row_to_log(dict(r)) for r in rows]
        finally:
            conn.close()

    def count_sent(self, invoice_id: str) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM reminder_logs WHERE invoice_id = ? AND status = ?",
                (invoice_id, ReminderStatus.SENT.value),
            ).fetchone()
            return dict(row)["cnt"]
        finally:
            conn.close()

    def sum_sent_cost(self, tenant_id: str, start: datetime, end: datetime) -> float:
        """Total cost of sent rows for a tenant with start <= sent_at < end."""
        conn = self._get_conn()
        try:
            row = conn.execute(
                """SELECT SUM(cost) AS total FROM reminder_logs
                   WHERE tenant_id = ? AND status = ? AND sent_at >= ? AND sent_at < ?""",
                (tenant_id, ReminderStatus.SENT.value, start.isoformat(), end.isoformat()),
            ).fetchone()
            return dict(row)["total"] or 0.0
        finally:
            conn.close()

    def all_logs(self) -> list[ReminderLog]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM reminder_logs ORDER BY sent_at ASC").fetchall()
            return [_row_to_log(dict(r)) for r in rows]
        finally:
            conn.close()

    def get_stats(self) -> dict[str, Any]:
        """Counts by status and channel plus the total cost of sent rows."""
        conn = self._get_conn()
        try:
            status_rows = conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM reminder_logs GROUP BY status"
            ).fetchall()
            channel_rows = conn.execute(
                "SELECT channel, COUNT(*) AS cnt FROM reminder_logs GROUP BY channel"
            ).fetchall()
            cost_row = conn.execute(
                "SELECT SUM(cost) AS total FROM reminder_logs WHERE status = ?",
                (ReminderStatus.SENT.value,),
            ).fetchone()
        finally:
            conn.close()

        counts_by_status = {dict(r)["status"]: dict(r)["cnt"] for r in status_rows}
        return {
            "total_logs": sum(counts_by_status.values()),
            "counts_by_status": counts_by_status,
            "counts_by_channel": {dict(r)["channel"]: dict(r)["cnt"] for r in channel_rows},
            "total_cost": dict(cost_row)["total"] or 0.0,
        }


# ---------------------------------------------------------------------------
# Budget checker
# ---------------------------------------------------------------------------

class LogBudgetChecker:
    """Monthly spend limit per tenant, computed from sent log rows.

    A missing limit, or a limit of 0, means unlimited.
    """

    def __init__(
        self,
        store,
        monthly_limits: Optional[dict[str, float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._limits = dict(monthly_limits or {})
        self._clock = clock or datetime.now

    def monthly_spend(self, tenant_id: str) -> float:
        start, end = month_bounds(self._clock())
        return self._store.sum_sent_cost(tenant_id, start, end)

    def is_within_budget(self, tenant_id: str) -> bool:
        limit = self._limits.get(tenant_id) or 0
        if limit <= 0:
            return True
        spend = self.monthly_spend(tenant_id)
        if spend >= limit:
            logger.info("Tenant %s spent %.4f of %.4f monthly budget", tenant_id, spend, limit)
            return False
        return True
