"""Tests for reminder_engine.log_store -- reminder log persistence and budgets.

Covers:
- In-memory and SQLite stores behave the same (create, update, query)
- Rows survive reopening the SQLite file
- Monthly cost aggregation and the budget checker
"""

import sqlite3
from datetime import datetime, timedelta

import pytest

from reminder_engine.log_store import (
    InMemoryReminderLogStore,
    LogBudgetChecker,
    SqliteReminderLogStore,
    month_bounds,
)
from reminder_engine.models import Channel, ReminderStatus

from fakes import NOW, make_log


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryReminderLogStore()
    return SqliteReminderLogStore(tmp_path / "logs" / "reminders.db")


# ============================================================================
# Store contract
# ============================================================================

class TestStoreContract:
    """Both implementations satisfy the same contract."""

    def test_create_assigns_id(self, store):
        log = store.create_log(make_log(status=ReminderStatus.PENDING))
        assert log.log_id
        assert store.find_logs_by_invoice_id("INV-1")[0].log_id == log.log_id

    def test_create_keeps_given_id(self, store):
        log = make_log()
        log.log_id = "fixed-id"
        assert store.create_log(log).log_id == "fixed-id"

    def test_update(self, store):
        log = store.create_log(make_log(status=ReminderStatus.PENDING))
        log.status = ReminderStatus.SENT
        log.delivered_at = NOW
        log.message_id = "m-1"
        log.cost = 0.01
        log.attempts = 2
        assert store.update_log(log) is True

        stored = store.find_logs_by_invoice_id("INV-1")[0]
        assert stored.status is ReminderStatus.SENT
        assert stored.delivered_at == NOW
        assert stored.message_id == "m-1"
        assert stored.cost == 0.01
        assert stored.attempts == 2

    @pytest.mark.parametrize("retryable", [True, False])
    def test_failed_row_keeps_retryable(self, store, retryable):
        log = store.create_log(make_log(status=ReminderStatus.PENDING))
        assert store.find_logs_by_invoice_id("INV-1")[0].retryable is None
        log.status = ReminderStatus.FAILED
        log.error = "timeout"
        log.retryable = retryable
        store.update_log(log)
        assert store.find_logs_by_invoice_id("INV-1")[0].retryable is retryable

    def test_update_unknown_row(self, store):
        log = make_log()
        log.log_id = "missing"
        assert store.update_log(log) is False

    def test_find_sorted_and_filtered(self, store):
        store.create_log(make_log(sent_at=NOW - timedelta(days=1)))
        store.create_log(make_log(sent_at=NOW - timedelta(days=9)))
        store.create_log(make_log(invoice_id="INV-2"))
        logs = store.find_logs_by_invoice_id("INV-1")
        assert [l.sent_at for l in logs] == [NOW - timedelta(days=9), NOW - timedelta(days=1)]
        assert store.find_logs_by_invoice_id("INV-404") == []

    def test_count_sent(self, store):
        store.create_log(make_log(status=ReminderStatus.SENT))
        store.create_log(make_log(status=ReminderStatus.FAILED))
        store.create_log(make_log(status=ReminderStatus.PENDING))
        assert store.count_sent("INV-1") == 1

    def test_returned_logs_are_copies(self, store):
        store.create_log(make_log())
        first = store.find_logs_by_invoice_id("INV-1")[0]
        first.status = ReminderStatus.FAILED
        assert store.find_logs_by_invoice_id("INV-1")[0].status is ReminderStatus.SENT

    def test_sum_sent_cost(self, store):
        start, end = month_bounds(NOW)
        store.create_log(make_log(cost=0.5, sent_at=NOW))
        store.create_log(make_log(cost=0.25, sent_at=NOW - timedelta(days=2)))
        store.create_log(make_log(cost=9.0, status=ReminderStatus.FAILED, sent_at=NOW))
        store.create_log(make_log(cost=9.0, sent_at=start - timedelta(seconds=1)))
        store.create_log(make_log(cost=9.0, tenant_id="other", sent_at=NOW))
        assert store.sum_sent_cost("default", start, end) == pytest.approx(0.75)

    def test_stats(self, store):
        store.create_log(make_log(cost=0.5))
        store.create_log(make_log(channel=Channel.SMS, status=ReminderStatus.FAILED))
        stats = store.get_stats()
        assert stats["total_logs"] == 2
        assert stats["counts_by_status"] == {"sent": 1, "failed": 1}
        assert stats["counts_by_channel"] == {"email": 1, "sms": 1}
        assert stats["total_cost"] == pytest.approx(0.5)


class TestInMemoryStore:

    def test_duplicate_id_rejected(self):
        store = InMemoryReminderLogStore()
        log = store.create_log(make_log())
        clone = make_log()
        clone.log_id = log.log_id
        with pytest.raises(ValueError):
            store.create_log(clone)


class TestSqliteStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "reminders.db"
        SqliteReminderLogStore(path).create_log(make_log(cost=0.1, tenant_id="acme"))
        reopened = SqliteReminderLogStore(path)
        logs = reopened.all_logs()
        assert len(logs) == 1
        assert logs[0].tenant_id == "acme"
        assert logs[0].channel is Channel.EMAIL

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "a" / "b" / "reminders.db"
        SqliteReminderLogStore(path)
        assert path.exists()

    def test_adds_retryable_column_to_older_file(self, tmp_path):
        path = tmp_path / "reminders.db"
        conn = sqlite3.connect(str(path))
        conn.execute(
            """CREATE TABLE reminder_logs (
                   log_id TEXT PRIMARY KEY, tenant_id TEXT NOT NULL DEFAULT 'default',
                   invoice_id TEXT NOT NULL, channel TEXT NOT NULL,
                   status TEXT NOT NULL DEFAULT 'pending', message TEXT NOT NULL DEFAULT '',
                   escalation_level TEXT NOT NULL, sent_at TEXT NOT NULL, delivered_at TEXT,
                   error TEXT, cost REAL, message_id TEXT,
                   attempts INTEGER NOT NULL DEFAULT 0)"""
        )
        conn.execute(
            "INSERT INTO reminder_logs (log_id, invoice_id, channel, status, escalation_level, sent_at) "
            "VALUES ('old', 'INV-1', 'email', 'sent', 'gentle', ?)",
            (NOW.isoformat(),),
        )
        conn.commit()
        conn.close()

        store = SqliteReminderLogStore(path)
        logs = store.all_logs()
        assert [l.log_id for l in logs] == ["old"]
        assert logs[0].retryable is None

        failed = make_log(status=ReminderStatus.FAILED)
        failed.retryable = False
        store.create_log(failed)
        assert store.count_sent("INV-1") == 1
        assert {l.retryable for l in store.all_logs()} == {None, False}


# ============================================================================
# Budget
# ============================================================================

class TestMonthBounds:

    def test_mid_year(self):
        assert month_bounds(NOW) == (datetime(2026, 3, 1), datetime(2026, 4, 1))

    def test_december_rolls_year(self):
        assert month_bounds(datetime(2026, 12, 31, 23, 59)) == (
            datetime(2026, 12, 1), datetime(2027, 1, 1),
        )


class TestLogBudgetChecker:

    def _store_with_spend(self, amount):
        store = InMemoryReminderLogStore()
        store.create_log(make_log(cost=amount, sent_at=NOW))
        return store

    def test_no_limit_is_unlimited(self):
        checker = LogBudgetChecker(self._store_with_spend(1000.0), {}, clock=lambda: NOW)
        assert checker.is_within_budget("default")

    def test_zero_limit_is_unlimited(self):
        checker = LogBudgetChecker(self._store_with_spend(1000.0), {"default": 0}, clock=lambda: NOW)
        assert checker.is_within_budget("default")

    def test_under_limit(self):
        checker = LogBudgetChecker(self._store_with_spend(4.0), {"default": 5.0}, clock=lambda: NOW)
        assert checker.monthly_spend("default") == pytest.approx(4.0)
        assert checker.is_within_budget("default")

    def test_at_limit_is_exceeded(self):
        checker = LogBudgetChecker(self._store_with_spend(5.0), {"default": 5.0}, clock=lambda: NOW)
        assert not checker.is_within_budget("default")

    def test_previous_month_spend_ignored(self):
        checker = LogBudgetChecker(
            self._store_with_spend(50.0), {"default": 5.0},
            clock=lambda: NOW + timedelta(days=31),
        )
        assert checker.is_within_budget("default")
