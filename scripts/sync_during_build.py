#!/usr/bin/env python3
"""ビルド時 ConnectWise 同期スクリプト

デプロイのビルド工程で実行する。
- 初回: 全エンティティをフル同期
- 2回目以降: 変更分のみインクリメンタル同期

同期に失敗・タイムアウトしても終了コードは常に 0。

必要な環境変数:
  - DIRECT_DATABASE_URL
  - CW_CLIENT_ID, CW_PUBLIC_KEY, CW_PRIVATE_KEY, CW_BASE_URL, CW_COMPANY_ID
  - CW_ALLOWED_IDENTIFIERS

使用方法:
  python scripts/sync_during_build.py
"""

import os
import sys

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashboard_sync.services.connectwise.build import main

if __name__ == "__main__":
    sys.exit(main())
