#!/usr/bin/env python3
"""ConnectWise 同期 手動実行スクリプト

使用方法:
  python scripts/connectwise_sync.py status
  python scripts/connectwise_sync.py sync
  python scripts/connectwise_sync.py sync --force
  python scripts/connectwise_sync.py sync --entities tickets timeEntries

結果は JSON で標準出力に出す。
"""

import argparse
import asyncio
import json
import os
import sys

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashboard_sync.db.store import open_store
from dashboard_sync.lib.config import SyncConfig, load_config
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient
from dashboard_sync.services.connectwise.orchestrator import (
    ENTITY_TYPES,
    get_sync_status,
    perform_sync,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ConnectWise sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show sync freshness per entity")

    sync_parser = subparsers.add_parser("sync", help="Run a sync")
    sync_parser.add_argument("--force", action="store_true", help="Full sync regardless of freshness")
    sync_parser.add_argument(
        "--entities",
        nargs="+",
        metavar="ENTITY",
        help=f"Entities to sync (default: all). One of: {', '.join(ENTITY_TYPES)}",
    )
    return parser.parse_args(argv)


async def run_sync(config: SyncConfig, force: bool, entities: list[str] | None) -> dict:
    with open_store(config.database_url) as store:
        async with ConnectWiseClient(config.connectwise) as client:
            return await perform_sync(client, store, config, force=force, entities=entities)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config()
    except ValueError as e:
        print(f"エラー: {e}", file=sys.stderr)
        return 1

    if args.command == "status":
        with open_store(config.database_url) as store:
            result = get_sync_status(store, config)
    else:
        result = asyncio.run(run_sync(config, args.force, args.entities))

    print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
