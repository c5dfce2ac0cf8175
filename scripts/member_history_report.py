#!/usr/bin/env python3
"""メンバー在籍履歴レポート出力スクリプト

ConnectWise の全メンバーについて最初・最後の時間エントリー日を取得し、
Markdown ファイルに書き出す。DB は使用しない。

必要な環境変数:
  - CW_CLIENT_ID, CW_PUBLIC_KEY, CW_PRIVATE_KEY, CW_BASE_URL, CW_COMPANY_ID

使用方法:
  python scripts/member_history_report.py
  python scripts/member_history_report.py --output reports/members.md
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# .envファイルを読み込む
load_dotenv()

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashboard_sync.lib.config import ConnectWiseConfig
from dashboard_sync.services.connectwise.api_client import ConnectWiseClient
from dashboard_sync.services.connectwise.member_history import (
    fetch_member_history,
    render_member_history,
)


def _env(*names: str) -> str:
    for name in names:
        if os.environ.get(name):
            return os.environ[name]
    return ""


async def main(output: Path) -> int:
    """メイン処理"""
    config = ConnectWiseConfig(
        client_id=_env("CW_CLIENT_ID", "VITE_CW_CLIENT_ID"),
        public_key=_env("CW_PUBLIC_KEY", "VITE_CW_PUBLIC_KEY"),
        private_key=_env("CW_PRIVATE_KEY"),
        base_url=_env("CW_BASE_URL", "VITE_CW_BASE_URL").rstrip("/"),
        company_id=_env("CW_COMPANY_ID", "VITE_CW_COMPANY_ID"),
        codebase=_env("CW_CODEBASE") or None,
    )

    try:
        async with ConnectWiseClient(config) as client:
            rows = await fetch_member_history(client)
    except ValueError as e:
        print(f"エラー: {e}")
        return 1

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_member_history(rows), encoding="utf-8")
    print(f"✅ {len(rows)} 名分のレポートを {output} に保存しました")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="ConnectWise member history report")
    parser.add_argument("--output", type=Path, default=Path("member_history_report.md"))
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.output)))
