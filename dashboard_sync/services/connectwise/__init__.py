"""ConnectWise Manage 同期モジュール

ConnectWise Manage REST API v3.0 からメンバー・ボード・チケット・時間エントリー・
プロジェクトを取得し、ローカルの PostgreSQL にインクリメンタル同期する。

モジュール構成:
- api_client.py: 認証・API呼び出し・ページネーション
- models.py: APIレスポンス → DB行 の変換
- ledger.py: 同期台帳（sync_log）
- sync_masters.py: メンバー・ボード同期
- sync_tickets.py: サービスチケット・時間エントリー同期
- sync_projects.py: プロジェクト・プロジェクトチケット同期
- repair.py: プレースホルダー親レコード作成
- audit.py: プロジェクト監査ログ取得
- orchestrator.py: 統合オーケストレーター
- build.py: ビルド時同期
- member_history.py: メンバー在籍履歴レポート
"""

from dashboard_sync.services.connectwise.orchestrator import get_sync_status, perform_sync

__all__ = ["get_sync_status", "perform_sync"]
