from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agenda_agents.datastore import Filter, StaticIdentity
from agenda_agents.db import MySqlDataStore, build_where
from agenda_agents.errors import DeliveryRejected
from agenda_agents.notifications import MySqlNotificationCenter


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._result = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        self.conn.executed.append((" ".join(sql.split()), tuple(params)))
        if "INFORMATION_SCHEMA.TABLES" in sql:
            self._result = [{"1": 1}] if params[0] in self.conn.tables else []
        elif "INFORMATION_SCHEMA.COLUMNS" in sql:
            self._result = [{"1": 1}] if params[1] in self.conn.columns else []
        elif sql.lstrip().upper().startswith("SELECT"):
            self._result = list(self.conn.rows)
        else:
            if self.conn.fail_writes:
                raise RuntimeError("write failed")
            self._result = []

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result)


class FakeConn:
    def __init__(self, tables=("appointments", "notifications"), columns=(), rows=()):
        self.tables = set(tables)
        self.columns = set(columns)
        self.rows = list(rows)
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.fail_writes = False
        self.in_transaction = True

    def cursor(self, *args, **kwargs):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


def test_build_where_binds_values():
    start = datetime(2025, 1, 7, 12, 0, tzinfo=timezone.utc)
    where, params = build_where(
        [
            Filter("user_id", "eq", "u1"),
            Filter("start", "gte", start),
            Filter("status", "neq", "cancelled"),
            Filter("subscription_id", "in", ["a", "b"]),
            Filter("birth_date", "not_null"),
        ]
    )
    assert where == (
        " WHERE `user_id` = %s AND `start` >= %s AND (`status` <> %s OR `status` IS NULL)"
        " AND `subscription_id` IN (%s, %s) AND `birth_date` IS NOT NULL"
    )
    # clinic wall time, naive
    assert params == ["u1", datetime(2025, 1, 7, 9, 0), "cancelled", "a", "b"]


def test_build_where_empty_in_matches_nothing():
    where, params = build_where([Filter("id", "in", [])])
    assert where == " WHERE 1=0"
    assert params == []


def test_identifiers_are_validated():
    with pytest.raises(ValueError):
        build_where([Filter("user_id; DROP TABLE x", "eq", 1)])


def test_query_decodes_json_and_closes_connection():
    conn = FakeConn(tables={"patients"}, rows=[{"id": 1, "planned_procedures": '[{"status": "completed"}]'}])
    rows = MySqlDataStore(lambda: conn).query("patients", [Filter("user_id", "eq", "u1")], order_by="-id", limit=5)

    assert rows == [{"id": 1, "planned_procedures": [{"status": "completed"}]}]
    assert conn.closed
    assert conn.executed[-1] == ("SELECT * FROM `patients` WHERE `user_id` = %s ORDER BY `id` DESC LIMIT 5", ("u1",))


def test_query_on_missing_table_is_empty():
    conn = FakeConn(tables=set())
    assert MySqlDataStore(lambda: conn).query("sales") == []
    assert conn.closed


def test_center_replaces_pending_row_by_dedupe_key(local):
    conn = FakeConn(columns={"title", "message", "status", "scheduled_at", "dedupe_key", "meta_json"})
    center = MySqlNotificationCenter(StaticIdentity("u1"), lambda: conn)

    center.schedule("daily_summary", local(2025, 1, 7, 21), "📊 Daily summary", "body")

    statements = [sql for sql, _ in conn.executed]
    delete = next(i for i, s in enumerate(statements) if s.startswith("DELETE FROM notifications"))
    insert = next(i for i, s in enumerate(statements) if s.startswith("INSERT INTO notifications"))
    assert delete < insert
    _, params = conn.executed[insert]
    assert params[0] == "u1"
    assert datetime(2025, 1, 7, 21, 0) in params
    assert "daily_summary" in params
    assert conn.commits == 1 and conn.closed


def test_center_wraps_db_errors(local):
    conn = FakeConn(columns={"dedupe_key"})
    conn.fail_writes = True
    center = MySqlNotificationCenter(StaticIdentity("u1"), lambda: conn)

    with pytest.raises(DeliveryRejected):
        center.schedule("daily_summary", local(2025, 1, 7, 21), "t", "b")
    assert conn.rollbacks == 1


def test_center_without_user_rejects(local):
    center = MySqlNotificationCenter(StaticIdentity(None), lambda: FakeConn())
    with pytest.raises(DeliveryRejected):
        center.schedule("daily_summary", local(2025, 1, 7, 21), "t", "b")


def test_center_lists_pending_rows(local):
    conn = FakeConn(
        columns={"dedupe_key", "scheduled_at", "title", "message", "meta_json"},
        rows=[
            {
                "dedupe_key": "appointment_a1",
                "scheduled_at": datetime(2025, 1, 7, 14, 30),
                "title": "⏰ Upcoming appointment",
                "message": "Ana at 15:00 (in 30 min)",
                "meta_json": None,
            }
        ]
    )
    pending = MySqlNotificationCenter(StaticIdentity("u1"), lambda: conn).list_pending()
    assert [(p.identifier, p.trigger) for p in pending] == [("appointment_a1", local(2025, 1, 7, 14, 30))]


def test_center_without_dedupe_column_degrades():
    conn = FakeConn(columns={"title", "message", "status"}, rows=[{"id": 9}])
    center = MySqlNotificationCenter(StaticIdentity("u1"), lambda: conn)

    assert center.list_pending() == []
    center.cancel(["daily_summary"])

    assert not any("dedupe_key IN" in sql or "FROM notifications WHERE" in sql for sql, _ in conn.executed)
    assert conn.rollbacks == 0
