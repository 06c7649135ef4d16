"""Structured logging configuration."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog

LOG_FILE_NAME = "latest.log"

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _resolve_level(log_level: str) -> int:
    """ログレベル名を数値に変換する（無効な場合は INFO）."""
    name = log_level.upper()
    if name not in _VALID_LEVELS:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        name = "INFO"
    return int(getattr(logging, name))


def _daily_file_handler(
    path: Path,
    level: int,
    backup_count: int,
    formatter: logging.Formatter,
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str | Path = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    ブリッジは呼び出しごとに別プロセスとして起動され、複数のプロセスが同じ
    latest.log に書き込む. そのため各レコードにプロセスID（pid）を付与する.
    標準出力はプロトコル専用のため、ログの出力先は次の2つのみ:
    - コンソール (stderr): ERROR以上
    - <log_dir>/latest.log: log_level 以上（日次ローテーション）

    Args:
        log_level: latest.log に出力する最低ログレベル（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: ログ出力ディレクトリ
        log_backup_count: ローテーション後のログの保持日数
    """
    level = _resolve_level(log_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(pid=os.getpid())

    json_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(json_formatter)
    root_logger.addHandler(console_handler)

    # SDK のデバッグログは量が多いため抑制する
    logging.getLogger("claude_agent_sdk").setLevel(logging.INFO)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root_logger.addHandler(
        _daily_file_handler(log_path / LOG_FILE_NAME, level, log_backup_count, json_formatter)
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
