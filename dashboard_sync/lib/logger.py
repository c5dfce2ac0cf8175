"""同期エンジン共通のロガー

各モジュールは `logger = setup_logger(__name__)` で取得する。
出力先は stdout（ビルドログ / CLI 出力にそのまま流す）。
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class SyncLogHandler(logging.StreamHandler):
    """stdout 出力ハンドラー（重複登録の判定用）"""

    def __init__(self):
        super().__init__(sys.stdout)
        self.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))


def resolve_level(level: Optional[str] = None) -> int:
    """ログレベルを決定

    引数があればそれを使い、未知の名前は ValueError。
    引数が無ければ環境変数 LOG_LEVEL（未設定・未知の値なら INFO）。
    """
    if level:
        name = level.strip().upper()
        if name not in LEVELS:
            raise ValueError(f"Unknown log level: {level!r} (expected one of {', '.join(LEVELS)})")
        return LEVELS[name]

    env_level = (os.environ.get("LOG_LEVEL") or "").strip().upper()
    return LEVELS.get(env_level, logging.INFO)


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """stdout に出力するロガーを返す

    同じ名前で再度呼ばれた場合はレベルだけ更新し、ハンドラーは追加しない。
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(level))

    if not any(isinstance(h, SyncLogHandler) for h in logger.handlers):
        logger.addHandler(SyncLogHandler())

    logger.propagate = False
    return logger
