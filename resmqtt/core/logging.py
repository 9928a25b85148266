"""Logging configuration.

ロギング設定を提供するモジュール。
主な機能:
- Richを使ったコンソールと任意のファイルへのログ出力
- MQTTパケットのログ記録
- エラー情報のログ記録

ライブラリとしてはハンドラーを追加しません。アプリケーション側で
``setup_logging()`` を呼び出して出力先を決定します。
"""

import logging
from pathlib import Path
from typing import Any, Optional, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import CONSOLE_THEME, LOG_FILE_FORMAT, LOG_FORMAT, LOGGER_NAME

# ライブラリ共通のロガー
logger = logging.getLogger(LOGGER_NAME)
logger.addHandler(logging.NullHandler())


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """ロガーの出力先を設定する.

    Args:
        level (int, optional): ログレベル。デフォルトはINFO。
        log_file (Optional[Union[str, Path]], optional): ログファイルのパス。
            指定した場合はファイルにも出力する。

    Returns:
        logging.Logger: 設定済みのロガーインスタンス
    """
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    console = Console(theme=Theme(CONSOLE_THEME), color_system="auto")
    console_handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(Path(log_file), encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def log_packet(
    packet_type: str,
    packet_data: bytes,
    direction: str = ">>",
    level: int = logging.DEBUG,
) -> None:
    """MQTTパケットをログに記録する.

    Args:
        packet_type (str): パケットの種類
        packet_data (bytes): 送受信したバイト列
        direction (str, optional): パケットの方向(>> = 送信、<< = 受信).
            デフォルトは">>"
        level (int, optional): ログレベル. デフォルトはDEBUG
    """
    if not logger.isEnabledFor(level):
        return
    logger.log(level, f"{direction} {packet_type}: {packet_data.hex(' ')}")


def log_error(
    error_code: str, level: int = logging.ERROR, **detail: Any
) -> None:
    """ERROR_MESSAGESのエラーをログに記録する.

    Args:
        error_code (str): エラーコード
        level (int, optional): ログレベル. デフォルトはERROR
        **detail: メッセージに埋め込む値
    """
    from .exceptions import error_message

    logger.log(level, error_message(error_code, **detail))
