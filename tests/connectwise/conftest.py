"""ConnectWise 同期テスト共通フィクスチャ"""

import itertools
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable
from unittest.mock import AsyncMock, MagicMock

import pytest

from dashboard_sync.db.store import _record_columns, _table_spec
from dashboard_sync.lib.config import ConnectWiseConfig, SyncConfig
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient
from dashboard_sync.services.connectwise.context import SyncContext

# 新規行の列既定値（schema.sql の DEFAULT 相当）
COLUMN_DEFAULTS: dict[str, dict[str, Any]] = {
    "sync_log": {"last_sync_at": None, "record_count": 0, "error_message": None},
    "tickets": {"closed_flag": False},
}

# 外部キー（schema.sql の REFERENCES 相当）
FOREIGN_KEYS: dict[str, dict[str, str]] = {
    "service_boards": {"board_id": "boards"},
    "tickets": {"board_id": "boards"},
    "time_entries": {"member_id": "members", "ticket_id": "tickets"},
    "project_tickets": {"project_id": "projects"},
    "project_audits": {"project_id": "projects"},
}


class ForeignKeyViolation(Exception):
    pass


class FakeStore:
    """SyncStore のインメモリ実装（外部キー検証付き）"""

    def __init__(self):
        self.tables: dict[str, dict[Any, dict[str, Any]]] = defaultdict(dict)
        self._audit_ids = itertools.count(1)

    def _check_foreign_keys(self, table: str, row: dict[str, Any]) -> None:
        for column, parent in FOREIGN_KEYS.get(table, {}).items():
            value = row.get(column)
            if value is not None and value not in self.tables[parent]:
                raise ForeignKeyViolation(f"{table}.{column}={value} not in {parent}")

    def upsert(self, table: str, record: dict[str, Any]) -> None:
        key, _ = _record_columns(table, record)
        existing = self.tables[table].get(record[key])
        row = dict(existing) if existing else dict(COLUMN_DEFAULTS.get(table, {}))
        row.update(record)
        self._check_foreign_keys(table, row)
        self.tables[table][record[key]] = row

    def insert_if_absent(self, table: str, record: dict[str, Any]) -> bool:
        key, _ = _record_columns(table, record)
        if record[key] in self.tables[table]:
            return False
        self.upsert(table, record)
        return True

    def find_by_id(self, table: str, record_id: Any) -> dict[str, Any] | None:
        _table_spec(table)
        row = self.tables[table].get(record_id)
        return dict(row) if row else None

    def find_many(self, table: str, ids: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        _table_spec(table)
        rows = self.tables[table]
        keys = sorted(rows) if ids is None else sorted(i for i in set(ids) if i in rows)
        return [dict(rows[k]) for k in keys]

    def append_audit(self, record: dict[str, Any]) -> bool:
        for row in self.tables["project_audits"].values():
            if (row["project_id"], row["status"], row["date_entered"]) == (
                record["project_id"], record.get("status"), record["date_entered"]
            ):
                return False
        self.upsert("project_audits", {"id": next(self._audit_ids), **record})
        return True

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.find_many(table)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cw_config() -> ConnectWiseConfig:
    return ConnectWiseConfig(
        client_id="client-123",
        public_key="pub",
        private_key="priv",
        base_url="https://api-na.myconnectwise.net",
        company_id="acme",
        codebase="v2024_1",
    )


@pytest.fixture
def config(cw_config) -> SyncConfig:
    """eng1, eng2 を許可した同期設定"""
    return SyncConfig(
        database_url="postgresql://localhost:5432/test",
        connectwise=cw_config,
        allowed_identifiers=["ENG1", "eng2"],
    )


@pytest.fixture
def client() -> MagicMock:
    """ConnectWiseClient のモック（各 get_* は空リストを返す）"""
    mock = MagicMock(spec=ConnectWiseClient)
    for name in (
        "get_members", "get_boards", "get_tickets", "get_time_entries",
        "get_projects", "get_project_tickets", "get_audit_trail",
    ):
        setattr(mock, name, AsyncMock(return_value=[]))
    return mock


@pytest.fixture
def ctx(client, store, config) -> SyncContext:
    return SyncContext(client=client, store=store, config=config)


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_members() -> list[dict[str, Any]]:
    return [
        {"id": 10, "identifier": "Eng1", "firstName": "Ada", "lastName": "Lee",
         "emailAddress": "ada@example.com", "inactiveFlag": False},
        {"id": 20, "identifier": "eng2", "firstName": "Bo", "lastName": "Kim",
         "emailAddress": "bo@example.com", "inactiveFlag": False},
        {"id": 30, "identifier": "other", "firstName": "Cy", "lastName": "Ng",
         "emailAddress": "cy@example.com", "inactiveFlag": False},
    ]


@pytest.fixture
def sample_boards() -> list[dict[str, Any]]:
    return [
        {"id": 5, "name": "HelpDesk (MS)"},
        {"id": 6, "name": "Escalations(MS)"},
        {"id": 7, "name": "Professional Services"},
    ]
