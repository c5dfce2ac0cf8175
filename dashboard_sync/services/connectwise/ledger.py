"""同期台帳（sync_log）

エンティティ種別ごとに最終同期時刻・件数・状態を永続化する。
last_sync_at は成功時のみ、かつ前進方向にのみ更新する。
"""

from datetime import datetime, timedelta
from typing import TypedDict

from dashboard_sync.db.store import SyncStore
from dashboard_sync.lib.logger import setup_logger

logger = setup_logger(__name__)

TABLE = "sync_log"

STATUS_IN_PROGRESS = "in_progress"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class LedgerEntry(TypedDict):
    """sync_log テーブルレコード"""
    entity_type: str
    last_sync_at: datetime | None
    record_count: int
    status: str
    error_message: str | None


def is_stale(entry: LedgerEntry | None, now: datetime, threshold: timedelta) -> bool:
    """前回同期から threshold を超えて経過していれば True（未同期も True）"""
    if entry is None or entry.get("last_sync_at") is None:
        return True
    return now - entry["last_sync_at"] > threshold


class SyncLedger:
    """sync_log の読み書き"""

    def __init__(self, store: SyncStore):
        self.store = store

    def entries(self) -> dict[str, LedgerEntry]:
        return {row["entity_type"]: row for row in self.store.find_many(TABLE)}

    def get(self, entity_type: str) -> LedgerEntry | None:
        return self.store.find_by_id(TABLE, entity_type)

    def mark_in_progress(self, entity_type: str) -> None:
        """作業開始を記録（last_sync_at / record_count は変更しない）"""
        self.store.upsert(
            TABLE,
            {"entity_type": entity_type, "status": STATUS_IN_PROGRESS, "error_message": None},
        )

    def record_success(self, entity_type: str, synced_at: datetime, record_count: int) -> None:
        """成功を記録

        last_sync_at は max(既存値, synced_at)。時計が巻き戻っても後退しない。
        """
        previous = self.get(entity_type)
        last_sync_at = synced_at
        if previous and previous.get("last_sync_at") and previous["last_sync_at"] > synced_at:
            logger.warning(
                f"Ledger for {entity_type} is ahead of sync time "
                f"({previous['last_sync_at'].isoformat()} > {synced_at.isoformat()}), keeping it"
            )
            last_sync_at = previous["last_sync_at"]

        self.store.upsert(
            TABLE,
            {
                "entity_type": entity_type,
                "last_sync_at": last_sync_at,
                "record_count": record_count,
                "status": STATUS_SUCCESS,
                "error_message": None,
            },
        )

    def record_failure(self, entity_type: str, error_message: str) -> None:
        """失敗を記録（last_sync_at は変更しない）"""
        self.store.upsert(
            TABLE,
            {"entity_type": entity_type, "status": STATUS_FAILED, "error_message": error_message},
        )
