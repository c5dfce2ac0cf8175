"""ロギング設定 テスト"""

import logging

import pytest

from dashboard_sync.lib.logger import SyncLogHandler, resolve_level, setup_logger


def test_setup_logger_level_from_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")

    logger = setup_logger("dashboard_sync.test.env")

    assert logger.level == logging.DEBUG
    assert logger.propagate is False


def test_setup_logger_does_not_duplicate_handlers(monkeypatch):
    """同じ名前で2回呼んでもハンドラーは1つ"""
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    setup_logger("dashboard_sync.test.dup")
    logger = setup_logger("dashboard_sync.test.dup", level="warning")

    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], SyncLogHandler)
    assert logger.level == logging.WARNING


def test_resolve_level_argument_wins_over_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")

    assert resolve_level(" Debug ") == logging.DEBUG


def test_resolve_level_unknown_env_falls_back_to_info(monkeypatch):
    """環境変数の不正値ではインポート時に落とさない"""
    monkeypatch.setenv("LOG_LEVEL", "verbose")

    assert resolve_level() == logging.INFO


def test_resolve_level_unknown_argument_raises():
    with pytest.raises(ValueError, match="Unknown log level"):
        resolve_level("verbose")
