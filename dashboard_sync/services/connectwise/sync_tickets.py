"""ConnectWise サービスチケット・時間エントリー同期

tickets: サービスボード上の、許可メンバーが owner / resource のチケット
time_entries: 許可メンバーの時間エントリー（未知のチケットはプレースホルダーで補完）
"""

from datetime import datetime
from typing import Any

from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.context import HandlerResult, SyncContext
from dashboard_sync.services.connectwise.models import (
    ref_identifier,
    split_resources,
    to_db_ticket,
    to_db_time_entry,
    to_int,
)
from dashboard_sync.services.connectwise.repair import ensure_parent
from dashboard_sync.services.connectwise.sync_masters import select_service_boards

logger = setup_logger(__name__)


def is_relevant_ticket(ticket: dict[str, Any], allowed: set[str]) -> bool:
    """owner または resources のいずれかが許可メンバーか（大文字小文字無視）"""
    owner = (ref_identifier(ticket.get("owner")) or "").lower()
    if owner in allowed:
        return True

    resources = ref_identifier(ticket.get("teamMember")) or ticket.get("resources")
    return any(r in allowed for r in split_resources(resources))


def _mode_label(modified_since: datetime | None) -> str:
    return "incremental" if modified_since else "full"


async def sync_tickets(ctx: SyncContext, modified_since: datetime | None = None) -> HandlerResult:
    """サービスチケットを同期

    Args:
        ctx: 実行コンテキスト
        modified_since: 指定時はこの時刻以降に更新されたチケットのみ取得

    Returns:
        保存したチケット件数とID
    """
    allowed = ctx.allowed_identifiers
    if not allowed:
        logger.warning("No allowed identifiers configured, skipping tickets")
        return HandlerResult(count=0, affected_ids=[])

    boards = await ctx.client.get_boards()
    service_board_ids = [
        board_id
        for board_id in (to_int(b.get("id")) for b in select_service_boards(boards, ctx.config))
        if board_id is not None
    ]
    if not service_board_ids:
        logger.warning("No service boards matched, skipping tickets")
        return HandlerResult(count=0, affected_ids=[])

    tickets = await ctx.client.get_tickets(
        service_board_ids,
        member_identifiers=sorted(allowed),
        modified_since=modified_since,
    )
    relevant = [t for t in tickets if is_relevant_ticket(t, allowed)]
    logger.info(
        f"Filtered {len(tickets)} tickets to {len(relevant)} relevant to allowed members "
        f"({_mode_label(modified_since)})"
    )

    ticket_ids: list[int] = []
    for ticket in relevant:
        record = to_db_ticket(ticket)
        if record is None:
            continue
        ensure_parent(ctx.store, "board", record["board_id"])
        ctx.store.upsert("tickets", record)
        ticket_ids.append(record["id"])

    return HandlerResult(count=len(ticket_ids), affected_ids=ticket_ids)


async def sync_time_entries(
    ctx: SyncContext, modified_since: datetime | None = None
) -> HandlerResult:
    """許可メンバーの時間エントリーを同期

    ローカルに存在しないメンバーのエントリーはスキップ。
    参照先チケットが未取得ならプレースホルダーを作成する。
    """
    member_ids = ctx.resolve_member_ids()
    if not member_ids:
        logger.warning("No allowed members available, skipping time entries")
        return HandlerResult(count=0, affected_ids=[])

    entries = await ctx.client.get_time_entries(member_ids, modified_since=modified_since)
    logger.info(
        f"Fetched {len(entries)} time entries for {len(member_ids)} allowed members "
        f"({_mode_label(modified_since)})"
    )

    allowed_ids = set(member_ids)
    known_members: dict[int, bool] = {}
    entry_ids: list[int] = []

    for entry in entries:
        record = to_db_time_entry(entry)
        if record is None:
            continue

        member_id = record["member_id"]
        if member_id not in allowed_ids:
            continue
        if member_id not in known_members:
            known_members[member_id] = ctx.store.find_by_id("members", member_id) is not None
        if not known_members[member_id]:
            logger.debug(f"Skipping time entry {record['id']}: member {member_id} not stored")
            continue

        if record["ticket_id"] is not None:
            ensure_parent(ctx.store, "ticket", record["ticket_id"])

        ctx.store.upsert("time_entries", record)
        entry_ids.append(record["id"])

    return HandlerResult(count=len(entry_ids), affected_ids=entry_ids)
