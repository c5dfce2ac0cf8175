"""設定読み込み テスト"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from dashboard_sync.lib.config import DEFAULT_SERVICE_BOARD_NAMES, load_config

REQUIRED_ENV = {
    "DIRECT_DATABASE_URL": "postgresql://localhost:5432/test",
    "CW_CLIENT_ID": "client-123",
    "CW_PUBLIC_KEY": "pub",
    "CW_PRIVATE_KEY": "priv",
    "CW_BASE_URL": "https://api-na.myconnectwise.net/",
    "CW_COMPANY_ID": "acme",
}


@pytest.fixture(autouse=True)
def no_dotenv():
    """ローカルの .env を読み込まない"""
    with patch("dashboard_sync.lib.config.load_dotenv"):
        yield


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(REQUIRED_ENV) + [
        "VITE_CW_CLIENT_ID", "VITE_CW_PUBLIC_KEY", "VITE_CW_BASE_URL", "VITE_CW_COMPANY_ID",
        "CW_CODEBASE", "CW_ALLOWED_IDENTIFIERS", "CW_SERVICE_BOARD_NAMES", "CW_SERVICE_BOARD_IDS",
        "SYNC_STALE_THRESHOLD_HOURS", "SYNC_INCREMENTAL_FALLBACK", "SYNC_MIN_INTERVAL_HOURS",
        "SYNC_TIMEOUT_SECONDS",
    ]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_load_config_defaults(clean_env):
    for name, value in REQUIRED_ENV.items():
        clean_env.setenv(name, value)

    config = load_config()

    assert config.connectwise.base_url == "https://api-na.myconnectwise.net"
    assert config.connectwise.codebase is None
    assert config.allowed_identifiers == []
    assert config.service_board_names == DEFAULT_SERVICE_BOARD_NAMES
    assert config.stale_threshold == timedelta(hours=24)
    assert config.incremental_fallback is True
    assert config.min_sync_interval == timedelta(hours=6)
    assert config.timeout_seconds == 600


def test_load_config_overrides(clean_env):
    for name, value in REQUIRED_ENV.items():
        clean_env.setenv(name, value)
    clean_env.setenv("CW_ALLOWED_IDENTIFIERS", "Eng1, eng2,")
    clean_env.setenv("CW_SERVICE_BOARD_IDS", "5,6")
    clean_env.setenv("SYNC_INCREMENTAL_FALLBACK", "false")
    clean_env.setenv("SYNC_MIN_INTERVAL_HOURS", "0")

    config = load_config()

    assert config.allowed_identifiers_lower == {"eng1", "eng2"}
    assert config.service_board_ids == [5, 6]
    assert config.incremental_fallback is False
    assert config.min_sync_interval is None


def test_load_config_vite_fallback(clean_env):
    """CW_* が無ければ VITE_CW_* を使う（秘密鍵を除く）"""
    for name, value in REQUIRED_ENV.items():
        clean_env.setenv(name.replace("CW_", "VITE_CW_") if name != "CW_PRIVATE_KEY" else name, value)

    config = load_config()

    assert config.connectwise.client_id == "client-123"
    assert config.connectwise.company_id == "acme"


def test_load_config_missing_values(clean_env):
    clean_env.setenv("DIRECT_DATABASE_URL", "postgresql://localhost:5432/test")
    clean_env.setenv("CW_CLIENT_ID", "client-123")

    with pytest.raises(ValueError, match="CW_PRIVATE_KEY"):
        load_config()


def test_load_config_requires_database_url(clean_env):
    with pytest.raises(ValueError, match="DIRECT_DATABASE_URL"):
        load_config()
