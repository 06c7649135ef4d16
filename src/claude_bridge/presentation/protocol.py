"""Line-tagged standard output protocol."""

from __future__ import annotations

import json
import sys
from typing import Any, TextIO

from claude_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

TAG_MESSAGE = "[MESSAGE]"
TAG_CONTENT = "[CONTENT]"
TAG_TOOL_USE = "[TOOL_USE]"
TAG_SESSION_ID = "[SESSION_ID]"
TAG_MESSAGE_START = "[MESSAGE_START]"
TAG_MESSAGE_END = "[MESSAGE_END]"
TAG_RESUMING = "[RESUMING]"
TAG_DEBUG = "[DEBUG]"
TAG_ERROR = "[ERROR]"


def escape_line(text: str) -> str:
    """改行を含むテキストを1行に収める."""
    return text.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n")


class ProtocolWriter:
    """
    ホストが解析するタグ付きの行を標準出力に書き込む.

    最終行（JSON）は1回の呼び出しにつき必ず1行だけ書き込まれ、それ以降の行は破棄される.
    """

    def __init__(self, stream: TextIO | None = None, debug: bool = False) -> None:
        """
        Initialize ProtocolWriter.

        Args:
            stream: 出力先（省略時は標準出力）
            debug: [DEBUG] 行を出力する場合True
        """
        self._stream = stream
        self.debug_enabled = debug
        self._finished = False

    @property
    def finished(self) -> bool:
        """最終行が書き込み済みかどうか."""
        return self._finished

    def message_start(self) -> None:
        """ストリーミング開始マーカーを書き込む."""
        self._write(TAG_MESSAGE_START)

    def message_end(self) -> None:
        """ストリーミング終了マーカーを書き込む."""
        self._write(TAG_MESSAGE_END)

    def message(self, payload: str) -> None:
        """受信したイベントをそのまま書き込む."""
        self._write(f"{TAG_MESSAGE} {payload}")

    def content(self, text: str) -> None:
        """assistant のテキストを書き込む."""
        self._write(f"{TAG_CONTENT} {escape_line(text)}")

    def tool_use(self, payload: str) -> None:
        """assistant のツール使用を書き込む."""
        self._write(f"{TAG_TOOL_USE} {payload}")

    def session_id(self, session_id: str) -> None:
        """セッションIDを書き込む."""
        self._write(f"{TAG_SESSION_ID} {session_id}")

    def resuming(self, session_id: str) -> None:
        """再開するセッションIDを書き込む."""
        self._write(f"{TAG_RESUMING} {session_id}")

    def debug(self, text: str) -> None:
        """デバッグ行を書き込む（debug 有効時のみ）."""
        if self.debug_enabled:
            self._write(f"{TAG_DEBUG} {escape_line(text)}")

    def error(self, text: str) -> None:
        """エラー行を書き込む."""
        self._write(f"{TAG_ERROR} {escape_line(text)}")

    def finish(self, result: dict[str, Any]) -> bool:
        """
        最終行のJSONを書き込む.

        既に書き込み済みの場合は何もしない.

        Args:
            result: 最終結果

        Returns:
            書き込んだ場合True
        """
        if self._finished:
            logger.warning("Final result already written, ignoring", result=result)
            return False
        self._write(json.dumps(result, ensure_ascii=False, default=str))
        self._finished = True
        return True

    def fail(self, error: str) -> bool:
        """失敗の最終行を書き込む."""
        return self.finish({"success": False, "error": error})

    def _write(self, line: str) -> None:
        if self._finished:
            logger.debug("Dropping line after final result", line=line[:200])
            return
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(line + "\n")
        stream.flush()
