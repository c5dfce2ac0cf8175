"""同期エンジンの設定

環境変数から ConnectWise 接続情報・許可エンジニア一覧・同期ポリシーを読み込む。
ローカル開発時は .env も読み込む。
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv

DEFAULT_SERVICE_BOARD_NAMES = [
    "Escalations(MS)",
    "HelpDesk (MS)",
    "HelpDesk (TS)",
    "Triage",
    "RMM-Continuum",
    "WL Internal",
]

DEFAULT_STALE_THRESHOLD_HOURS = 24
DEFAULT_MIN_SYNC_INTERVAL_HOURS = 6
DEFAULT_SYNC_TIMEOUT_SECONDS = 600


@dataclass
class ConnectWiseConfig:
    """ConnectWise Manage API 接続情報"""
    client_id: str
    public_key: str
    private_key: str
    base_url: str
    company_id: str
    codebase: str | None = None  # 未設定なら companyinfo から自動検出


@dataclass
class SyncConfig:
    database_url: str
    connectwise: ConnectWiseConfig
    allowed_identifiers: list[str] = field(default_factory=list)
    service_board_names: list[str] = field(
        default_factory=lambda: list(DEFAULT_SERVICE_BOARD_NAMES)
    )
    service_board_ids: list[int] = field(default_factory=list)
    stale_threshold: timedelta = timedelta(hours=DEFAULT_STALE_THRESHOLD_HOURS)
    incremental_fallback: bool = True
    min_sync_interval: timedelta | None = timedelta(hours=DEFAULT_MIN_SYNC_INTERVAL_HOURS)
    timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS

    @property
    def allowed_identifiers_lower(self) -> set[str]:
        return {i.strip().lower() for i in self.allowed_identifiers if i.strip()}


def _env(*names: str) -> str:
    """最初に見つかった環境変数の値を返す（なければ空文字）"""
    for name in names:
        value = os.environ.get(name)
        if value:
            return value.strip()
    return ""


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str, default: bool) -> bool:
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> SyncConfig:
    """環境変数から設定を読み込み

    Returns:
        同期設定

    Raises:
        ValueError: 必須の環境変数が未設定
    """
    load_dotenv()

    database_url = _env("DIRECT_DATABASE_URL")
    if not database_url:
        raise ValueError("DIRECT_DATABASE_URL is required")

    connectwise = ConnectWiseConfig(
        client_id=_env("CW_CLIENT_ID", "VITE_CW_CLIENT_ID"),
        public_key=_env("CW_PUBLIC_KEY", "VITE_CW_PUBLIC_KEY"),
        private_key=_env("CW_PRIVATE_KEY"),
        base_url=_env("CW_BASE_URL", "VITE_CW_BASE_URL").rstrip("/"),
        company_id=_env("CW_COMPANY_ID", "VITE_CW_COMPANY_ID"),
        codebase=_env("CW_CODEBASE") or None,
    )

    missing = [
        name for name, value in (
            ("CW_CLIENT_ID", connectwise.client_id),
            ("CW_PUBLIC_KEY", connectwise.public_key),
            ("CW_PRIVATE_KEY", connectwise.private_key),
            ("CW_BASE_URL", connectwise.base_url),
            ("CW_COMPANY_ID", connectwise.company_id),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"ConnectWise config is incomplete, missing: {', '.join(missing)}")

    service_board_names = _split_list(_env("CW_SERVICE_BOARD_NAMES"))
    min_interval_hours = float(
        _env("SYNC_MIN_INTERVAL_HOURS") or DEFAULT_MIN_SYNC_INTERVAL_HOURS
    )

    return SyncConfig(
        database_url=database_url,
        connectwise=connectwise,
        allowed_identifiers=_split_list(_env("CW_ALLOWED_IDENTIFIERS")),
        service_board_names=service_board_names or list(DEFAULT_SERVICE_BOARD_NAMES),
        service_board_ids=[int(i) for i in _split_list(_env("CW_SERVICE_BOARD_IDS"))],
        stale_threshold=timedelta(
            hours=float(_env("SYNC_STALE_THRESHOLD_HOURS") or DEFAULT_STALE_THRESHOLD_HOURS)
        ),
        incremental_fallback=_parse_bool(_env("SYNC_INCREMENTAL_FALLBACK"), default=True),
        min_sync_interval=timedelta(hours=min_interval_hours) if min_interval_hours > 0 else None,
        timeout_seconds=float(_env("SYNC_TIMEOUT_SECONDS") or DEFAULT_SYNC_TIMEOUT_SECONDS),
    )
