"""同期ハンドラー共通の実行コンテキスト"""

from dataclasses import dataclass
from typing import TypedDict

from dashboard_sync.db.store import SyncStore
from dashboard_sync.lib.config import SyncConfig
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient


class HandlerResult(TypedDict):
    """ハンドラー結果"""
    count: int
    affected_ids: list[int]


@dataclass
class SyncContext:
    """1回の同期実行で共有する状態

    allowed_member_ids は members ハンドラーが設定する。
    members がスキップされた場合は None のままで、ローカルDBから解決する。
    """
    client: ConnectWiseClient
    store: SyncStore
    config: SyncConfig
    allowed_member_ids: list[int] | None = None

    @property
    def allowed_identifiers(self) -> set[str]:
        return self.config.allowed_identifiers_lower

    def resolve_member_ids(self) -> list[int]:
        """許可メンバーのIDリスト（同一実行の結果 → ローカルDB の順で解決）"""
        if self.allowed_member_ids is not None:
            return self.allowed_member_ids

        allowed = self.allowed_identifiers
        self.allowed_member_ids = [
            row["id"]
            for row in self.store.find_many("members")
            if (row.get("identifier") or "").lower() in allowed
        ]
        return self.allowed_member_ids
