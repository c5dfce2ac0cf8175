"""ConnectWise マスタデータ同期

members, boards を同期。どちらも件数が少ないため常にフル同期。
サービスボード判定もここで行う。
"""

from datetime import datetime
from typing import Any, Iterable

from dashboard_sync.lib.config import SyncConfig
from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.context import HandlerResult, SyncContext
from dashboard_sync.services.connectwise.models import to_db_board, to_db_member, to_int

logger = setup_logger(__name__)


# =============================================================================
# Service boards
# =============================================================================


def _normalize_board_name(name: str) -> str:
    return name.lower().replace("(ms)", "").replace("(ts)", "").strip()


def is_service_board(board_name: str | None, service_board_names: Iterable[str]) -> bool:
    """ボード名が設定済みサービスボード名のいずれかと一致するか

    ボード名が設定名（(MS)/(TS) を除去）を含む、
    または設定名がボード名を含む場合に一致とみなす。
    """
    if not board_name:
        return False
    board_lower = board_name.lower()
    for name in service_board_names:
        normalized = _normalize_board_name(name)
        if (normalized and normalized in board_lower) or board_lower in name.lower():
            return True
    return False


def select_service_boards(
    boards: Iterable[dict[str, Any]], config: SyncConfig
) -> list[dict[str, Any]]:
    """サービスボードを抽出

    CW_SERVICE_BOARD_IDS が設定されていれば ID 完全一致、なければ名前の部分一致。
    """
    if config.service_board_ids:
        wanted = set(config.service_board_ids)
        return [b for b in boards if to_int(b.get("id")) in wanted]
    return [b for b in boards if is_service_board(b.get("name"), config.service_board_names)]


# =============================================================================
# Handlers
# =============================================================================


async def sync_members(ctx: SyncContext, modified_since: datetime | None = None) -> HandlerResult:
    """許可リストに含まれるアクティブメンバーを同期

    結果のメンバーIDは後続ハンドラー用に ctx に設定する。
    """
    members = await ctx.client.get_members()
    allowed = ctx.allowed_identifiers

    member_ids: list[int] = []
    for member in members:
        identifier = (member.get("identifier") or "").lower()
        if identifier not in allowed:
            continue
        record = to_db_member(member)
        if record is None:
            continue
        ctx.store.upsert("members", record)
        member_ids.append(record["id"])

    logger.info(
        f"Found {len(members)} total members, synced {len(member_ids)} allowed members"
    )
    if allowed and len(member_ids) < len(allowed):
        found = {(m.get("identifier") or "").lower() for m in members}
        logger.warning(f"Allowed identifiers not found in ConnectWise: {sorted(allowed - found)}")

    ctx.allowed_member_ids = member_ids
    return HandlerResult(count=len(member_ids), affected_ids=member_ids)


async def sync_boards(ctx: SyncContext, modified_since: datetime | None = None) -> HandlerResult:
    """ボードを同期（サービスボードは service_boards にも登録）"""
    boards = await ctx.client.get_boards()

    board_ids: list[int] = []
    for board in boards:
        record = to_db_board(board)
        if record is None:
            continue
        ctx.store.upsert("boards", record)
        board_ids.append(record["id"])

    service_boards = select_service_boards(boards, ctx.config)
    for board in service_boards:
        record = to_db_board(board)
        if record is None:
            continue
        ctx.store.upsert("service_boards", {"board_id": record["id"], "name": record["name"]})

    logger.info(f"Synced {len(board_ids)} boards ({len(service_boards)} service boards)")
    return HandlerResult(count=len(board_ids), affected_ids=board_ids)
