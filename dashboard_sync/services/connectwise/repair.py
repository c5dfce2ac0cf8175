"""参照整合性の修復

子レコード（チケット・時間エントリー）が親より先に届いた場合、
最小限のプレースホルダー親を作成してから子を保存する。
既存行は上書きしない（後続の正規同期で本物に置き換わる）。
"""

from typing import Literal

from dashboard_sync.db.store import SyncStore
from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.models import BOARD_TYPE_MS

logger = setup_logger(__name__)

DEFAULT_BOARD_ID = 1
DEFAULT_BOARD_NAME = "Default Board"
PLACEHOLDER_TICKET_SUMMARY = "Placeholder - synced via time entry"

ParentKind = Literal["board", "ticket"]


def _ensure_board(store: SyncStore, board_id: int, name: str) -> bool:
    created = store.insert_if_absent(
        "boards", {"id": board_id, "name": name, "type": BOARD_TYPE_MS}
    )
    if created:
        logger.info(f"Created placeholder board {board_id} ({name})")
    else:
        logger.debug(f"Board {board_id} already exists")
    return created


def ensure_parent(store: SyncStore, kind: ParentKind, parent_id: int) -> bool:
    """親レコードが無ければプレースホルダーを作成

    Args:
        store: ローカルストア
        kind: "board" または "ticket"
        parent_id: 親のID

    Returns:
        プレースホルダーを新規作成した場合 True

    Raises:
        ValueError: 未知の kind
    """
    if kind == "board":
        if store.find_by_id("boards", parent_id) is not None:
            return False
        return _ensure_board(store, parent_id, f"Board {parent_id}")

    if kind == "ticket":
        if store.find_by_id("tickets", parent_id) is not None:
            return False
        # プレースホルダーチケットは予約済みの既定ボードにぶら下げる
        if store.find_by_id("boards", DEFAULT_BOARD_ID) is None:
            _ensure_board(store, DEFAULT_BOARD_ID, DEFAULT_BOARD_NAME)

        created = store.insert_if_absent(
            "tickets",
            {
                "id": parent_id,
                "board_id": DEFAULT_BOARD_ID,
                "summary": PLACEHOLDER_TICKET_SUMMARY,
                "closed_flag": False,
            },
        )
        if created:
            logger.info(f"Created placeholder ticket {parent_id}")
        else:
            logger.debug(f"Ticket {parent_id} was created concurrently, skipping placeholder")
        return created

    raise ValueError(f"Unknown parent kind: {kind}")
