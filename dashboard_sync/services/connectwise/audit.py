"""監査ログ取得

Ready to Close / Closed に入ったプロジェクトについて、
ConnectWise の audit trail からステータス変更イベントを取り出し
project_audits に追記する。
"""

from typing import Any, Iterable

import httpx

from dashboard_sync.db.store import SyncStore
from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.api_client import ConnectWiseAPIError, ConnectWiseClient
from dashboard_sync.services.connectwise.models import to_db_project_audit

logger = setup_logger(__name__)

AUDITED_STATUSES = ("Ready to Close", "Closed")


def is_status_event(event: dict[str, Any]) -> bool:
    """ステータス変更イベントかどうか"""
    if event.get("auditType") == "Status":
        return True

    text = f"{event.get('text') or ''} {event.get('message') or ''}".lower()
    if "status changed" in text:
        return True

    new_value = event.get("newValue")
    return isinstance(new_value, str) and any(s in new_value for s in AUDITED_STATUSES)


async def capture_audits(
    client: ConnectWiseClient,
    store: SyncStore,
    record_type: str,
    record_ids: Iterable[int],
) -> int:
    """監査イベントを取得して追記

    1件のプロジェクトで失敗しても残りは続行する。

    Returns:
        追記した行数
    """
    appended = 0

    for record_id in record_ids:
        try:
            events = await client.get_audit_trail(record_type, record_id)
        except (ConnectWiseAPIError, httpx.HTTPError) as e:
            logger.error(f"Failed to fetch audit trail for {record_type} {record_id}: {e}")
            continue

        status_events = [e for e in events if is_status_event(e)]
        for event in status_events:
            record = to_db_project_audit(record_id, event)
            if record is None:
                continue
            if store.append_audit(record):
                appended += 1
            else:
                logger.debug(
                    f"Audit for {record_type} {record_id} at {record['date_entered']} already recorded"
                )

        logger.info(
            f"{record_type} {record_id}: {len(status_events)} status events "
            f"out of {len(events)} audit entries"
        )

    return appended
