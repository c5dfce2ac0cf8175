"""メンバー在籍履歴レポート

全メンバー（非アクティブ含む）の最初・最後の時間エントリー日を取得し、
Markdown テーブルとして出力する。同期本体とは独立した補助機能。
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, TypedDict

from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient
from dashboard_sync.services.connectwise.models import parse_datetime, to_text

logger = setup_logger(__name__)

DEFAULT_BATCH_SIZE = 10
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MemberHistory(TypedDict):
    """メンバー別の時間エントリー期間"""
    name: str
    identifier: str
    active: bool
    first_entry: datetime
    last_entry: datetime | None


async def _member_history(client: ConnectWiseClient, member: dict[str, Any]) -> MemberHistory | None:
    first, last = await client.get_time_entry_bounds(member["id"])
    first_entry = parse_datetime(first)
    if first_entry is None:
        return None

    name = " ".join(
        part for part in (to_text(member.get("firstName")), to_text(member.get("lastName"))) if part
    )
    return MemberHistory(
        name=name,
        identifier=member.get("identifier") or "",
        active=not member.get("inactiveFlag"),
        first_entry=first_entry,
        last_entry=parse_datetime(last),
    )


async def fetch_member_history(
    client: ConnectWiseClient,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[MemberHistory]:
    """全メンバーの時間エントリー期間を取得

    batch_size 件ずつ並列に問い合わせる。失敗したメンバーはログに残してスキップ、
    時間エントリーが1件も無いメンバーは結果に含めない。

    Returns:
        最終エントリーの新しい順
    """
    members = await client.get_members(include_inactive=True)
    logger.info(f"Fetching time entry history for {len(members)} members")

    rows: list[MemberHistory] = []
    for i in range(0, len(members), batch_size):
        batch = members[i:i + batch_size]
        results = await asyncio.gather(
            *(_member_history(client, m) for m in batch),
            return_exceptions=True,
        )
        for member, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to fetch history for {member.get('identifier')}: {result}")
            elif result is not None:
                rows.append(result)

    rows.sort(key=lambda r: r["last_entry"] or EPOCH, reverse=True)
    logger.info(f"Collected history for {len(rows)} members with time entries")
    return rows


def _format_date(value: datetime | None) -> str:
    return value.date().isoformat() if value else "N/A"


def render_member_history(rows: list[MemberHistory]) -> str:
    """Markdown レポートを生成"""
    lines = [
        "# Member History Report",
        "",
        "| Name | Identifier | Active in CW? | First Entry | Last Entry |",
        "|---|---|---|---|---|",
    ]
    for row in rows:
        lines.append(
            f"| {row['name']} | {row['identifier']} | {'Yes' if row['active'] else 'No'} "
            f"| {_format_date(row['first_entry'])} | {_format_date(row['last_entry'])} |"
        )
    return "\n".join(lines) + "\n"
