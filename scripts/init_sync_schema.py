#!/usr/bin/env python3
"""同期用テーブル作成スクリプト

dashboard_sync/db/schema.sql を DIRECT_DATABASE_URL の DB に適用する。
既存テーブルは変更しない（CREATE ... IF NOT EXISTS）。

使用方法:
  python scripts/init_sync_schema.py
"""

import os
import sys

from dotenv import load_dotenv

# .envファイルを読み込む
load_dotenv()

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashboard_sync.db.store import open_store


def main() -> int:
    """メイン処理"""
    print("=== 同期スキーマ セットアップ ===\n")

    database_url = os.environ.get("DIRECT_DATABASE_URL")
    if not database_url:
        print("エラー: DIRECT_DATABASE_URL 環境変数が設定されていません")
        return 1

    with open_store(database_url) as store:
        store.create_schema()

    print("✅ スキーマを適用しました")
    return 0


if __name__ == "__main__":
    sys.exit(main())
