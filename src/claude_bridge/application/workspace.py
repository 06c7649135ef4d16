"""Working directory selection."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from claude_bridge.application.paths import is_temp_path, temp_prefixes
from claude_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from claude_bridge.infrastructure.config import Config

logger = get_logger(__name__)

# ホスト側が未設定の cwd を文字列で渡してくる場合の値
_UNSET_CWD_VALUES = frozenset({"undefined", "null"})


def _normalize_candidate(candidate: str | Path | None) -> Path | None:
    """候補パスを絶対パスに正規化する. 空の候補はNone."""
    if candidate is None:
        return None
    text = str(candidate).strip()
    if not text:
        return None
    try:
        return Path(text).resolve()
    except (OSError, RuntimeError):
        return None


def select_working_directory(requested: str | None, config: Config) -> Path:
    """
    呼び出しの作業ディレクトリを選択する.

    候補の優先順位:
    1. 呼び出し元が指定したディレクトリ（"undefined" / "null" は除外）
    2. 外部から宣言されたプロジェクトパス（IDEA_PROJECT_PATH / PROJECT_PATH）
    3. プロセスのカレントディレクトリ
    4. ホームディレクトリ

    一時ディレクトリ配下の候補は、宣言済みのプロジェクトパスが存在する場合に限り
    スキップする. 存在するディレクトリである最初の候補を採用し、どれも該当しなければ
    プロジェクトパスまたはホームディレクトリを無条件に返す.

    Args:
        requested: 呼び出し元が指定した作業ディレクトリ
        config: アプリケーション設定

    Returns:
        作業ディレクトリ
    """
    project_path = config.external_project_path
    prefixes = temp_prefixes(config.tmpdir)

    candidates: list[str | Path] = []
    if requested and requested.strip() not in _UNSET_CWD_VALUES:
        candidates.append(requested)
    if project_path:
        candidates.append(project_path)
    candidates.append(Path.cwd())
    candidates.append(Path.home())

    logger.debug(
        "Selecting working directory",
        candidates=[str(c) for c in candidates],
    )

    for candidate in candidates:
        normalized = _normalize_candidate(candidate)
        if normalized is None:
            continue

        if project_path and is_temp_path(str(normalized), prefixes):
            logger.debug("Skipping temp directory candidate", candidate=str(normalized))
            continue

        if normalized.is_dir():
            logger.info("Working directory resolved", cwd=str(normalized))
            return normalized

        logger.debug("Candidate is not a directory", candidate=str(normalized))

    fallback = Path(project_path) if project_path else Path.home()
    logger.warning("Working directory fallback triggered", cwd=str(fallback))
    return fallback


def apply_working_directory(path: Path) -> bool:
    """
    プロセスのカレントディレクトリを変更する.

    失敗してもエラーにはせず、ログに記録して False を返す.

    Args:
        path: 作業ディレクトリ

    Returns:
        変更に成功した場合True
    """
    try:
        os.chdir(path)
    except OSError:
        logger.warning("Failed to change working directory", cwd=str(path), exc_info=True)
        return False
    logger.debug("Changed working directory", cwd=os.getcwd())
    return True
