"""Temp-directory detection and tool input path rewriting."""

from __future__ import annotations

import os
from pathlib import PurePosixPath
from typing import Any

from claude_bridge.application.models import PathRewrite
from claude_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

TEMP_PATH_PREFIXES: tuple[str, ...] = ("/tmp", "/var/tmp", "/private/tmp")

# 書き換え対象のキー（ファイルを指すフィールドのみ）
REWRITABLE_FIELDS: tuple[str, ...] = ("file_path", "notebook_path")


def temp_prefixes(tmpdir: str | None = None) -> list[str]:
    """
    一時ディレクトリとみなすパスプレフィックスの一覧を返す.

    Args:
        tmpdir: TMPDIR による上書き設定（未設定なら None）

    Returns:
        プレフィックスのリスト
    """
    prefixes = list(TEMP_PATH_PREFIXES)
    if tmpdir:
        normalized = tmpdir.rstrip("/") or "/"
        if normalized not in prefixes:
            prefixes.append(normalized)
    return prefixes


def _is_under(path: str, prefix: str) -> bool:
    """path が prefix と一致するか、パス区切り単位でその配下にあるかを判定する."""
    base = prefix.rstrip("/")
    if not base:
        return path.startswith("/")
    return path == base or path.startswith(base + "/")


def match_temp_prefix(path: str, prefixes: list[str]) -> str | None:
    """
    パスに一致する最長の一時ディレクトリプレフィックスを返す.

    Args:
        path: 判定対象のパス
        prefixes: 一時ディレクトリのプレフィックス

    Returns:
        一致したプレフィックス。一致しない場合None
    """
    matched = [p for p in prefixes if p and _is_under(path, p)]
    if not matched:
        return None
    return max(matched, key=lambda p: len(p.rstrip("/")))


def is_temp_path(path: str, prefixes: list[str]) -> bool:
    """パスが一時ディレクトリ配下にあるかを判定する."""
    return match_temp_prefix(path, prefixes) is not None


def relocate_path(path: str, prefix: str, project_root: str) -> str:
    """
    一時ディレクトリ配下のパスをプロジェクトルート配下へ移す.

    プレフィックスを取り除いた相対部分をプロジェクトルートに連結する.
    相対部分が空になる場合、またはルート外を指す場合はファイル名のみを使う.

    Args:
        path: 元のパス
        prefix: 一致した一時ディレクトリプレフィックス
        project_root: 解決済みのプロジェクトルート

    Returns:
        書き換え後のパス
    """
    relative = path[len(prefix.rstrip("/")) :].lstrip("/")
    if not relative:
        relative = PurePosixPath(path).name
    root = os.path.normpath(project_root)
    relocated = os.path.normpath(os.path.join(root, relative))
    if relocated != root and not relocated.startswith(root.rstrip("/") + "/"):
        # "../" でルート外に出るパスはファイル名のみに縮退させる
        relocated = os.path.join(root, PurePosixPath(path).name)
    return relocated


def rewrite_tool_input_paths(
    tool_name: str | None,
    tool_input: Any,
    project_root: str | None,
    prefixes: list[str],
) -> list[PathRewrite]:
    """
    ツール入力中の一時ディレクトリパスをプロジェクトルート配下に書き換える.

    file_path / notebook_path フィールドをネストした辞書・配列まで再帰的に探索し、
    その場で書き換える. それ以外のフィールドは変更しない.

    Args:
        tool_name: ツール名（ログ用）
        tool_input: ツール入力（in-place で変更される）
        project_root: プロジェクトルート。不明な場合None
        prefixes: 一時ディレクトリのプレフィックス

    Returns:
        実施した書き換えの記録。書き換えなしの場合は空リスト
    """
    if not project_root or not isinstance(tool_input, dict):
        return []

    root = os.path.normpath(project_root)
    rewrites: list[PathRewrite] = []

    def traverse(value: Any) -> None:
        if isinstance(value, list):
            for item in value:
                traverse(item)
            return
        if not isinstance(value, dict):
            return

        for key in REWRITABLE_FIELDS:
            current = value.get(key)
            if not isinstance(current, str):
                continue
            prefix = match_temp_prefix(current, prefixes)
            if prefix is None or _is_under(os.path.normpath(current), root):
                # ルート自体が一時ディレクトリ配下にある場合、その配下のパスは書き換えない
                continue
            relocated = relocate_path(current, prefix, project_root)
            value[key] = relocated
            rewrites.append(PathRewrite(original=current, rewritten=relocated))

        for child in value.values():
            if isinstance(child, (dict, list)):
                traverse(child)

    traverse(tool_input)

    if rewrites:
        logger.info(
            "Rewrote temp paths in tool input",
            tool_name=tool_name,
            rewrites=[{"from": r.original, "to": r.rewritten} for r in rewrites],
        )
    return rewrites
