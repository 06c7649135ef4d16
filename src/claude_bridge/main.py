"""Main entry point for the Claude Bridge command."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

from pydantic import ValidationError

from claude_bridge.application.session import ABORTED_MESSAGE
from claude_bridge.infrastructure.config import get_config
from claude_bridge.infrastructure.logging import configure_logging, get_logger
from claude_bridge.presentation.cli import BridgeCli
from claude_bridge.presentation.protocol import ProtocolWriter


async def main(argv: list[str] | None = None, writer: ProtocolWriter | None = None) -> int:
    """
    アプリケーションのメインエントリポイント.

    Args:
        argv: コマンドライン引数（省略時は sys.argv[1:]）
        writer: 標準出力プロトコルの書き込み先

    Returns:
        終了コード
    """
    if argv is None:
        argv = sys.argv[1:]

    # 設定を読み込み（ロギング設定より前に必要）
    try:
        config = get_config()
    except ValidationError as e:
        configure_logging()
        get_logger(__name__).exception("Invalid configuration")
        (writer or ProtocolWriter()).fail(f"Invalid configuration: {e}")
        logging.shutdown()
        return 1

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)
    if writer is None:
        writer = ProtocolWriter()
    writer.debug_enabled = writer.debug_enabled or config.bridge_debug

    unhandled_errors: list[str] = []
    command: asyncio.Task[int] | None = None

    def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        message = str(exc) if exc is not None else str(context.get("message", "Unknown error"))
        logger.error("Unhandled exception in event loop", error=message, exc_info=exc)
        unhandled_errors.append(message)
        writer.fail(message)
        # 最終行の後にコマンドが出力を続けないよう中断する
        if command is not None and not command.done():
            command.cancel()

    loop = asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(handle_loop_exception)

    exit_code = 1
    try:
        command = asyncio.create_task(BridgeCli(config, writer).run(argv))
        exit_code = await command
    except asyncio.CancelledError:
        if not unhandled_errors:
            raise
        logger.warning("Command cancelled after unhandled exception")
        exit_code = 1
    except Exception as e:
        logger.exception("Fatal error occurred")
        writer.error(str(e))
        writer.fail(str(e) or type(e).__name__)
        exit_code = 1
    finally:
        loop.set_exception_handler(previous_handler)
        logger.info("Command finished", exit_code=exit_code, unhandled=len(unhandled_errors))
        # ログのフラッシュと確実なクローズ
        logging.shutdown()

    return 1 if unhandled_errors else exit_code


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    writer = ProtocolWriter()
    try:
        exit_code = asyncio.run(main(writer=writer))
    except KeyboardInterrupt:
        writer.fail(ABORTED_MESSAGE)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
