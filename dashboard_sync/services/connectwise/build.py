"""ビルド時同期

デプロイのビルド工程から呼ばれる。タイムアウト付きで perform_sync を実行し、
どのような結果でも終了コード 0 を返す（同期失敗でビルドを止めない）。
タイムアウト時も書き込み済みの行は残り、次回は最後に成功した時刻から再開する。
"""

import asyncio
import time

from dashboard_sync.db.store import open_store
from dashboard_sync.lib.config import SyncConfig, load_config
from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient
from dashboard_sync.services.connectwise.orchestrator import SyncResponse, perform_sync

logger = setup_logger(__name__)


async def build_sync(config: SyncConfig, timeout: float | None = None) -> SyncResponse:
    """設定からストア・クライアントを開いて同期を実行

    Raises:
        asyncio.TimeoutError: timeout 秒以内に完了しなかった
    """
    timeout = config.timeout_seconds if timeout is None else timeout

    with open_store(config.database_url) as store:
        async with ConnectWiseClient(config.connectwise) as client:
            return await asyncio.wait_for(
                perform_sync(client, store, config, respect_min_interval=True),
                timeout=timeout,
            )


def log_summary(response: SyncResponse) -> None:
    for result in response["results"]:
        status = "synced" if result["synced"] else "skipped"
        logger.info(f"  {result['entity']}: {status} - {result['message']}")

    failed = [r["entity"] for r in response["results"] if r["message"].startswith("Failed")]
    if failed:
        logger.warning(f"Entities failed during build sync: {failed}")


def main() -> int:
    """ビルド時同期のエントリーポイント（常に 0 を返す）"""
    start_time = time.perf_counter()
    logger.info("Starting build-time ConnectWise sync")

    try:
        config = load_config()
    except ValueError as e:
        logger.error(f"Skipping build sync, configuration error: {e}")
        return 0

    try:
        response = asyncio.run(build_sync(config))
    except asyncio.TimeoutError:
        logger.error(
            f"Build sync timed out after {config.timeout_seconds}s, "
            "committed records are kept and the next run resumes from the ledger"
        )
        return 0
    except Exception as e:
        logger.exception(f"Build sync failed: {e}")
        return 0

    log_summary(response)
    elapsed = round(time.perf_counter() - start_time, 2)
    logger.info(f"Build-time ConnectWise sync finished in {elapsed}s")
    return 0
