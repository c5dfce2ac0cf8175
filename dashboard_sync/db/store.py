"""ローカルストア（PostgreSQL）への共通書き込みクライアント

同期ハンドラーはこのクラス経由でのみテーブルにアクセスする。
- upsert: id をキーにした INSERT ... ON CONFLICT DO UPDATE
- insert_if_absent: 既存行があれば何もしない（プレースホルダー作成用）
- find_by_id / find_many: 単純な読み取り
- append_audit: project_audits への追記（ベストエフォートで重複排除）

1ステートメントごとに commit する（タイムアウト時も書き込み済み分は残る）。

使用方法:
    with open_store(database_url) as store:
        store.upsert("members", {"id": 1, "identifier": "eng1", ...})
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Iterable

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from dashboard_sync.lib.logger import setup_logger

logger = setup_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# テーブル名 → (キー列, 更新可能な列)
TABLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "members": (
        "id",
        ("identifier", "first_name", "last_name", "email", "inactive_flag"),
    ),
    "boards": ("id", ("name", "type")),
    "service_boards": ("board_id", ("name",)),
    "tickets": (
        "id",
        (
            "summary", "board_id", "status", "owner", "company", "type", "priority",
            "resources", "date_entered", "resolved_date", "closed_date", "closed_flag",
            "estimated_hours", "actual_hours",
        ),
    ),
    "time_entries": (
        "id",
        (
            "member_id", "ticket_id", "hours", "billable_option", "billable",
            "notes", "internal_notes", "date_start", "date_end",
        ),
    ),
    "projects": (
        "id",
        (
            "name", "status", "company", "manager_identifier", "manager_name",
            "board_name", "type", "estimated_start", "estimated_end", "actual_start",
            "actual_end", "estimated_hours", "actual_hours", "percent_complete",
            "closed_flag", "description",
        ),
    ),
    "project_tickets": (
        "id",
        (
            "summary", "project_id", "project_name", "phase_id", "phase_name",
            "board_id", "board_name", "status", "company", "resources", "closed_flag",
            "priority", "type", "wbs_code", "budget_hours", "actual_hours",
            "date_entered", "closed_date",
        ),
    ),
    "project_audits": (
        "id",
        ("project_id", "status", "previous_status", "changed_by", "date_entered", "message"),
    ),
    "sync_log": (
        "entity_type",
        ("last_sync_at", "record_count", "status", "error_message"),
    ),
}


def _table_spec(table: str) -> tuple[str, tuple[str, ...]]:
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


def _record_columns(table: str, record: dict[str, Any]) -> tuple[str, list[str]]:
    """レコードの列を検証し (キー列, 列リスト) を返す"""
    key, mutable = _table_spec(table)
    if key not in record:
        raise ValueError(f"Record for {table} is missing key column '{key}'")

    unknown = set(record) - {key, *mutable}
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")

    return key, [key] + [c for c in mutable if c in record]


class SyncStore:
    """同期エンジン用 PostgreSQL リポジトリ

    接続のライフサイクルは呼び出し側（エントリーポイント）が管理する。
    """

    def __init__(self, conn: "psycopg2.extensions.connection"):
        self.conn = conn

    def _execute(
        self,
        query: sql.Composable,
        params: Iterable[Any] = (),
        fetch: bool = False,
    ) -> tuple[list[dict[str, Any]], int]:
        """クエリを実行して commit（失敗時は rollback して再送出）"""
        try:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, tuple(params))
                rows = [dict(r) for r in cur.fetchall()] if fetch else []
                rowcount = cur.rowcount
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return rows, rowcount

    def upsert(self, table: str, record: dict[str, Any]) -> None:
        """キー列で UPSERT（レコードに含まれる列のみ上書き）"""
        key, columns = _record_columns(table, record)
        update_columns = [c for c in columns if c != key]

        if update_columns:
            conflict_action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                    for c in update_columns
                )
            )
        else:
            conflict_action = sql.SQL("DO NOTHING")

        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({key}) {action}"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            key=sql.Identifier(key),
            action=conflict_action,
        )
        self._execute(query, [record[c] for c in columns])

    def insert_if_absent(self, table: str, record: dict[str, Any]) -> bool:
        """存在しなければ INSERT

        Returns:
            新規作成した場合 True（既存・競合時は False）
        """
        key, columns = _record_columns(table, record)
        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({key}) DO NOTHING"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            key=sql.Identifier(key),
        )
        _, rowcount = self._execute(query, [record[c] for c in columns])
        return rowcount == 1

    def find_by_id(self, table: str, record_id: Any) -> dict[str, Any] | None:
        """キー列で1件取得"""
        key, _ = _table_spec(table)
        query = sql.SQL("SELECT * FROM {table} WHERE {key} = %s").format(
            table=sql.Identifier(table),
            key=sql.Identifier(key),
        )
        rows, _ = self._execute(query, [record_id], fetch=True)
        return rows[0] if rows else None

    def find_many(self, table: str, ids: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        """キー列のリストで複数取得（ids=None なら全件）"""
        key, _ = _table_spec(table)
        if ids is None:
            query = sql.SQL("SELECT * FROM {table} ORDER BY {key}").format(
                table=sql.Identifier(table),
                key=sql.Identifier(key),
            )
            rows, _ = self._execute(query, fetch=True)
            return rows

        id_list = list(ids)
        if not id_list:
            return []

        query = sql.SQL("SELECT * FROM {table} WHERE {key} = ANY(%s) ORDER BY {key}").format(
            table=sql.Identifier(table),
            key=sql.Identifier(key),
        )
        rows, _ = self._execute(query, [id_list], fetch=True)
        return rows

    def append_audit(self, record: dict[str, Any]) -> bool:
        """project_audits に追記

        同じ project_id / status / date_entered の行が既にあればスキップ。
        一意制約ではないため厳密な重複排除ではない。

        Returns:
            追記した場合 True
        """
        _, columns = _record_columns("project_audits", {"id": None, **record})
        columns = [c for c in columns if c != "id"]

        query = sql.SQL(
            "INSERT INTO project_audits ({columns}) SELECT {values} "
            "WHERE NOT EXISTS ("
            "SELECT 1 FROM project_audits "
            "WHERE project_id = %s "
            "AND status IS NOT DISTINCT FROM %s "
            "AND date_entered = %s)"
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        params = [record[c] for c in columns] + [
            record["project_id"],
            record.get("status"),
            record["date_entered"],
        ]
        _, rowcount = self._execute(query, params)
        return rowcount == 1

    def create_schema(self) -> None:
        """schema.sql を適用（既存テーブルはそのまま）"""
        try:
            with self.conn.cursor() as cur:
                cur.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        logger.info("Applied sync schema")


@contextmanager
def open_store(database_url: str) -> Generator[SyncStore, None, None]:
    """DB接続を開いて SyncStore を返すコンテキストマネージャ"""
    conn = psycopg2.connect(database_url)
    try:
        yield SyncStore(conn)
    finally:
        conn.close()
