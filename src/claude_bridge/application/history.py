"""Session history reader."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from claude_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class SessionFileNotFoundError(Exception):
    """セッションファイルが見つからない場合の例外."""

    def __init__(self, session_id: str, path: Path | None = None) -> None:
        """
        Initialize SessionFileNotFoundError.

        Args:
            session_id: セッションID
            path: 探索したファイルパス
        """
        super().__init__("Session file not found")
        self.session_id = session_id
        self.path = path


def sanitize_cwd(cwd: str) -> str:
    """作業ディレクトリをプロジェクトディレクトリ名に変換する（英数字以外は "-"）."""
    return re.sub(r"[^a-zA-Z0-9]", "-", cwd)


class SessionHistoryReader:
    """エージェントが保存したセッション履歴（JSONL）を読み込む."""

    def __init__(self, projects_dir: Path) -> None:
        """
        Initialize SessionHistoryReader.

        Args:
            projects_dir: セッション履歴のルートディレクトリ
        """
        self._projects_dir = projects_dir

    def session_file(self, session_id: str, cwd: str) -> Path:
        """
        セッションファイルのパスを返す.

        Raises:
            SessionFileNotFoundError: セッションIDがファイル名として不正な場合
        """
        if not session_id or "/" in session_id or "\\" in session_id:
            raise SessionFileNotFoundError(session_id)
        return self._projects_dir / sanitize_cwd(cwd) / f"{session_id}.jsonl"

    def read_messages(
        self, session_id: str, cwd: str | None = None
    ) -> list[dict[str, Any]]:
        """
        セッションのメッセージを記録順に読み込む.

        空行と解析できない行は読み飛ばす.

        Args:
            session_id: セッションID
            cwd: セッション作成時の作業ディレクトリ（省略時はプロセスのカレントディレクトリ）

        Returns:
            メッセージのリスト

        Raises:
            SessionFileNotFoundError: セッションファイルが存在しない場合
        """
        path = self.session_file(session_id, cwd or str(Path.cwd()))
        if not path.is_file():
            logger.warning("Session file not found", session_id=session_id, path=str(path))
            raise SessionFileNotFoundError(session_id, path)

        messages: list[dict[str, Any]] = []
        skipped = 0
        with path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError:
                    skipped += 1

        logger.info(
            "Session history loaded",
            session_id=session_id,
            message_count=len(messages),
            skipped=skipped,
        )
        return messages
