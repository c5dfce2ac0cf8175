"""SyncStore テスト（psycopg2 接続はモック）"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import psycopg2
import pytest

from dashboard_sync.db.store import SyncStore


@pytest.fixture
def conn():
    """psycopg2 接続のモック"""
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.rowcount = 1
    cursor.fetchall.return_value = []
    return conn


@pytest.fixture
def cursor(conn):
    return conn.cursor.return_value.__enter__.return_value


def executed(cursor) -> tuple[str, tuple]:
    """最後に実行したクエリ（Composable の repr）とパラメータ"""
    query, params = cursor.execute.call_args.args
    return repr(query), params


# =============================================================================
# Unit Tests: Upsert
# =============================================================================


def test_upsert_updates_only_given_columns(conn, cursor):
    SyncStore(conn).upsert("members", {"id": 10, "identifier": "eng1", "email": "a@example.com"})

    query, params = executed(cursor)
    assert "ON CONFLICT (" in query
    assert "DO UPDATE SET " in query
    assert "Identifier('identifier')" in query
    assert "Identifier('first_name')" not in query
    assert params == (10, "eng1", "a@example.com")
    conn.commit.assert_called_once()


def test_upsert_key_only_does_nothing_on_conflict(conn, cursor):
    SyncStore(conn).upsert("boards", {"id": 5})

    query, _ = executed(cursor)
    assert "DO NOTHING" in query


def test_upsert_unknown_table(conn):
    with pytest.raises(ValueError, match="Unknown table"):
        SyncStore(conn).upsert("invoices", {"id": 1})


def test_upsert_unknown_column(conn):
    with pytest.raises(ValueError, match="Unknown columns"):
        SyncStore(conn).upsert("boards", {"id": 1, "color": "red"})


def test_upsert_missing_key(conn):
    with pytest.raises(ValueError, match="missing key column"):
        SyncStore(conn).upsert("sync_log", {"status": "success"})


def test_db_error_rolls_back(conn, cursor):
    """DBエラー時は rollback して再送出"""
    cursor.execute.side_effect = psycopg2.OperationalError("connection lost")

    with pytest.raises(psycopg2.OperationalError):
        SyncStore(conn).upsert("boards", {"id": 5, "name": "X", "type": "MS"})

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()


# =============================================================================
# Unit Tests: Reads & inserts
# =============================================================================


def test_insert_if_absent_reports_creation(conn, cursor):
    store = SyncStore(conn)
    assert store.insert_if_absent("boards", {"id": 5, "name": "Board 5", "type": "MS"}) is True

    cursor.rowcount = 0
    assert store.insert_if_absent("boards", {"id": 5, "name": "Board 5", "type": "MS"}) is False
    assert "DO NOTHING" in executed(cursor)[0]


def test_find_by_id(conn, cursor):
    cursor.fetchall.return_value = [{"entity_type": "tickets", "record_count": 3}]

    row = SyncStore(conn).find_by_id("sync_log", "tickets")

    assert row == {"entity_type": "tickets", "record_count": 3}
    assert executed(cursor)[1] == ("tickets",)


def test_find_by_id_missing(conn):
    assert SyncStore(conn).find_by_id("members", 99) is None


def test_find_many_empty_ids_skips_query(conn, cursor):
    assert SyncStore(conn).find_many("projects", []) == []
    cursor.execute.assert_not_called()


def test_find_many_by_ids(conn, cursor):
    cursor.fetchall.return_value = [{"id": 1}, {"id": 2}]

    rows = SyncStore(conn).find_many("projects", {1, 2})

    query, params = executed(cursor)
    assert "ANY(%s)" in query
    assert sorted(params[0]) == [1, 2]
    assert rows == [{"id": 1}, {"id": 2}]


def test_append_audit_dedupe_params(conn, cursor):
    entered = datetime(2024, 5, 20, 15, tzinfo=timezone.utc)
    record = {
        "project_id": 300,
        "status": "Closed",
        "previous_status": None,
        "changed_by": "eng1",
        "date_entered": entered,
        "message": None,
    }

    assert SyncStore(conn).append_audit(record) is True

    query, params = executed(cursor)
    assert "WHERE NOT EXISTS" in query
    assert params[-3:] == (300, "Closed", entered)
