"""ConnectWise 同期オーケストレーター

エンティティ種別ごとに鮮度を判定し、フル / インクリメンタル同期を選択して
ハンドラーを順番に実行する。結果は同期台帳（sync_log）に記録する。

実行順は固定: members → boards → tickets → timeEntries → projects → projectTickets
1つのエンティティが失敗しても残りは続行する。
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, TypedDict

from dashboard_sync.db.store import SyncStore
from dashboard_sync.lib.config import SyncConfig
from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.api_client import ConnectWiseAPIError, ConnectWiseClient
from dashboard_sync.services.connectwise.context import HandlerResult, SyncContext
from dashboard_sync.services.connectwise.ledger import SyncLedger, is_stale
from dashboard_sync.services.connectwise.sync_masters import sync_boards, sync_members
from dashboard_sync.services.connectwise.sync_projects import sync_project_tickets, sync_projects
from dashboard_sync.services.connectwise.sync_tickets import sync_tickets, sync_time_entries

logger = setup_logger(__name__)

# =============================================================================
# Configuration
# =============================================================================

ENTITY_TYPES = ["members", "boards", "tickets", "timeEntries", "projects", "projectTickets"]

# 件数が少ないため常にフル同期
ALWAYS_FULL = {"members", "boards"}

Handler = Callable[[SyncContext, datetime | None], Awaitable[HandlerResult]]

HANDLERS: dict[str, Handler] = {
    "members": sync_members,
    "boards": sync_boards,
    "tickets": sync_tickets,
    "timeEntries": sync_time_entries,
    "projects": sync_projects,
    "projectTickets": sync_project_tickets,
}

# 結果メッセージ用の単位
RECORD_LABELS = {
    "members": "members",
    "boards": "boards",
    "tickets": "tickets",
    "timeEntries": "entries",
    "projects": "projects",
    "projectTickets": "tickets",
}

FALLBACK_STATUS_CODES = {413, 414, 429}
FALLBACK_BODY_MARKERS = (
    "too large",
    "too long",
    "rate limit",
    "context length",
    "context limit",
)


# =============================================================================
# Types
# =============================================================================


class EntityResult(TypedDict):
    """エンティティ別の同期結果"""
    entity: str
    synced: bool
    count: int
    message: str


class SyncResponse(TypedDict):
    """perform_sync の結果"""
    results: list[EntityResult]
    synced_at: datetime


class EntityStatus(TypedDict):
    last_sync: datetime | None
    is_stale: bool
    count: int


class SyncStatus(TypedDict):
    """get_sync_status の結果"""
    is_stale: bool
    last_sync: datetime | None
    entities: dict[str, EntityStatus]


# =============================================================================
# Helpers
# =============================================================================


def is_fallback_eligible(error: BaseException) -> bool:
    """インクリメンタル失敗時にフル同期で再試行すべきエラーか

    対象: 429 / 413 / 414、または本文にレート制限・サイズ超過を示す語を含むもの。
    """
    if not isinstance(error, ConnectWiseAPIError):
        return False
    if error.status_code in FALLBACK_STATUS_CODES:
        return True
    body = (error.body or "").lower()
    return any(marker in body for marker in FALLBACK_BODY_MARKERS)


def _success_message(entity: str, count: int, incremental: bool) -> str:
    label = RECORD_LABELS[entity]
    if incremental:
        return f"Incremental: {count} modified {label}"
    return f"Full sync: {count} {label}"


def _skipped(entity: str, count: int, message: str) -> EntityResult:
    return EntityResult(entity=entity, synced=False, count=count, message=message)


# =============================================================================
# Sync
# =============================================================================


def _min_interval_remaining(
    last_sync_at: datetime | None, interval: timedelta | None, now: datetime
) -> timedelta | None:
    """最小同期間隔の残り時間（制限なしなら None）"""
    if interval is None or last_sync_at is None:
        return None
    elapsed = now - last_sync_at
    return interval - elapsed if elapsed < interval else None


async def _sync_entity(
    ctx: SyncContext,
    ledger: SyncLedger,
    entity: str,
    force: bool,
    now: datetime,
    respect_min_interval: bool,
) -> EntityResult:
    """1エンティティ分の同期（台帳操作を含め、例外は結果に変換して返す）"""
    try:
        return await _run_entity(ctx, ledger, entity, force, now, respect_min_interval)
    except Exception as e:
        return _fail(ledger, entity, e)


async def _run_entity(
    ctx: SyncContext,
    ledger: SyncLedger,
    entity: str,
    force: bool,
    now: datetime,
    respect_min_interval: bool,
) -> EntityResult:
    config = ctx.config
    entry = ledger.get(entity)
    last_sync_at = entry.get("last_sync_at") if entry else None
    prior_count = (entry.get("record_count") or 0) if entry else 0

    # ビルド時は鮮度ではなく最小同期間隔だけで判定
    if not force and respect_min_interval:
        remaining = _min_interval_remaining(last_sync_at, config.min_sync_interval, now)
        if remaining is not None:
            hours = remaining.total_seconds() / 3600
            logger.info(f"{entity}: synced recently, next sync allowed in {hours:.1f}h")
            return _skipped(
                entity, prior_count, f"Synced recently, next sync allowed in {hours:.1f} hours"
            )
    elif not force and not is_stale(entry, now, config.stale_threshold):
        logger.info(f"{entity}: data is fresh (last sync {last_sync_at.isoformat()}), skipping")
        return _skipped(entity, prior_count, "Data is fresh, skipping sync")

    incremental = last_sync_at is not None and not force and entity not in ALWAYS_FULL
    modified_since = last_sync_at if incremental else None
    handler = HANDLERS[entity]

    logger.info(f"{entity}: starting {'incremental' if incremental else 'full'} sync")
    ledger.mark_in_progress(entity)
    start_time = time.perf_counter()

    try:
        result = await handler(ctx, modified_since)
        message = _success_message(entity, result["count"], incremental)
        # インクリメンタル成功時は台帳の件数を前回値のまま維持
        ledger_count = prior_count if incremental else result["count"]
    except Exception as e:
        if not (incremental and config.incremental_fallback and is_fallback_eligible(e)):
            return _fail(ledger, entity, e)

        logger.warning(f"{entity}: incremental sync failed ({e}), falling back to full sync")
        try:
            result = await handler(ctx, None)
        except Exception as retry_error:
            return _fail(ledger, entity, retry_error)
        message = f"Fallback full sync: {result['count']} records (incremental failed)"
        ledger_count = result["count"]

    ledger.record_success(entity, now, ledger_count)
    elapsed = round(time.perf_counter() - start_time, 2)
    logger.info(f"{entity}: {message} ({elapsed}s)")

    return EntityResult(entity=entity, synced=True, count=result["count"], message=message)


def _fail(ledger: SyncLedger, entity: str, error: Exception) -> EntityResult:
    logger.error(f"{entity}: sync failed: {error}")
    try:
        ledger.record_failure(entity, str(error))
    except Exception as ledger_error:
        logger.error(f"{entity}: could not record failure in sync log: {ledger_error}")
    return _skipped(entity, 0, f"Failed: {error}")


async def perform_sync(
    client: ConnectWiseClient,
    store: SyncStore,
    config: SyncConfig,
    force: bool = False,
    entities: Iterable[str] | None = None,
    now: datetime | None = None,
    respect_min_interval: bool = False,
) -> SyncResponse:
    """ConnectWise → ローカルDB の同期を実行

    Args:
        client: ConnectWise API クライアント
        store: ローカルストア
        config: 同期設定
        force: True なら鮮度に関係なく全エンティティをフル同期
        entities: 同期対象（None / 空なら全種別）。指定順に関係なく固定順で実行
        now: 基準時刻（テスト用、既定は現在時刻 UTC）
        respect_min_interval: True なら鮮度判定の代わりに最小同期間隔で判定（ビルド時）

    Returns:
        エンティティ別の結果と同期時刻
    """
    now = now or datetime.now(timezone.utc)
    requested = list(entities) if entities else list(ENTITY_TYPES)
    ordered = [e for e in ENTITY_TYPES if e in requested]
    unknown = [e for e in requested if e not in HANDLERS]

    start_time = time.perf_counter()
    logger.info(f"Starting ConnectWise sync (force={force}, entities={ordered})")

    ledger = SyncLedger(store)
    ctx = SyncContext(client=client, store=store, config=config)
    results: list[EntityResult] = []

    for entity in ordered:
        results.append(
            await _sync_entity(ctx, ledger, entity, force, now, respect_min_interval)
        )

    for entity in unknown:
        logger.warning(f"Unknown entity type requested: {entity}")
        results.append(_skipped(entity, 0, "Unknown entity type"))

    elapsed = round(time.perf_counter() - start_time, 2)
    synced = sum(1 for r in results if r["synced"])
    logger.info(f"ConnectWise sync completed in {elapsed}s: {synced}/{len(results)} entities synced")

    return SyncResponse(results=results, synced_at=now)


def get_sync_status(
    store: SyncStore,
    config: SyncConfig,
    now: datetime | None = None,
) -> SyncStatus:
    """全エンティティの鮮度を返す（読み取りのみ）"""
    now = now or datetime.now(timezone.utc)
    entries = SyncLedger(store).entries()

    entities: dict[str, EntityStatus] = {}
    overall_stale = False
    latest: datetime | None = None

    for entity in ENTITY_TYPES:
        entry = entries.get(entity)
        last_sync = entry.get("last_sync_at") if entry else None
        stale = is_stale(entry, now, config.stale_threshold)

        entities[entity] = EntityStatus(
            last_sync=last_sync,
            is_stale=stale,
            count=(entry.get("record_count") or 0) if entry else 0,
        )
        overall_stale = overall_stale or stale
        if last_sync is not None and (latest is None or last_sync > latest):
            latest = last_sync

    return SyncStatus(is_stale=overall_stale, last_sync=latest, entities=entities)
