"""Tool-use permission broker."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from claude_bridge.application.models import (
    Allow,
    Deny,
    PermissionDecision,
    PermissionRequest,
)
from claude_bridge.application.paths import rewrite_tool_input_paths
from claude_bridge.infrastructure.logging import get_logger
from claude_bridge.infrastructure.permission_channel import PermissionResponseError

if TYPE_CHECKING:
    from claude_bridge.infrastructure.permission_channel import PermissionChannel

logger = get_logger(__name__)

# 副作用のない読み取り専用ツール（外部承認なしで許可）
AUTO_ALLOWED_TOOLS: frozenset[str] = frozenset({"Read", "Glob", "Grep"})

# 外部承認を待たずに拒否する機密パス
DANGEROUS_PATH_PATTERNS: tuple[str, ...] = (
    "/etc/",
    "/System/",
    "/usr/",
    "/bin/",
    "~/.ssh/",
    "~/.aws/",
)

# 危険パス検査の対象フィールド
PATH_SHAPED_FIELDS: tuple[str, ...] = ("file_path", "path", "notebook_path")

# シェルコマンドは絶対パスと ~ で始まるパスだけを検査する（.venv/bin/python などの相対パスは対象外）
COMMAND_FIELD = "command"
_COMMAND_PATH_RE = re.compile(r"(?:^|[\s=<>|;&'\"(])([~/][^\s'\";|&<>()]*)")

DEFAULT_PERMISSION_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.1


class PermissionState(str, Enum):
    """1回のツール使用判定の状態."""

    EVALUATING = "evaluating"
    AUTO_ALLOWED = "auto_allowed"
    DENIED_UNSAFE = "denied_unsafe"
    AWAITING_APPROVAL = "awaiting_approval"
    ALLOWED = "allowed"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


def _dangerous_patterns() -> tuple[str, ...]:
    """ホームディレクトリを展開した形も含めた危険パターンを返す."""
    home = str(Path.home()).rstrip("/")
    expanded = tuple(
        home + pattern[1:] for pattern in DANGEROUS_PATH_PATTERNS if pattern.startswith("~/")
    )
    return DANGEROUS_PATH_PATTERNS + expanded


def command_paths(command: str) -> list[str]:
    """シェルコマンドから絶対パスと ~ で始まるパスを取り出す."""
    return _COMMAND_PATH_RE.findall(command)


def iter_path_values(tool_input: Any) -> Iterator[str]:
    """ツール入力からパスを表す文字列を（ネストを含めて）列挙する."""
    if isinstance(tool_input, list):
        for item in tool_input:
            yield from iter_path_values(item)
        return
    if not isinstance(tool_input, dict):
        return
    for key, value in tool_input.items():
        if key in PATH_SHAPED_FIELDS and isinstance(value, str):
            yield value
        elif key == COMMAND_FIELD and isinstance(value, str):
            yield from command_paths(value)
        elif isinstance(value, (dict, list)):
            yield from iter_path_values(value)


def find_dangerous_path(tool_input: Any) -> str | None:
    """
    機密パスを含むフィールド値を探す.

    Args:
        tool_input: ツール入力

    Returns:
        最初に見つかった危険な値。見つからない場合None
    """
    patterns = _dangerous_patterns()
    for value in iter_path_values(tool_input):
        if any(pattern in value for pattern in patterns):
            return value
    return None


class PermissionBroker:
    """
    ツール使用ごとにパーミッションを判定する.

    判定の順序:
    1. 一時ディレクトリのパスをプロジェクトルートに書き換える（拒否理由にはならない）
    2. 機密パスを含む入力は即座に拒否する（外部との往復なし）
    3. 読み取り専用ツールは即座に許可する
    4. それ以外は要求ファイルを書き込み、応答ファイルをポーリングで待つ.
       タイムアウト・不正な応答は拒否として扱う
    """

    def __init__(
        self,
        channel: PermissionChannel,
        project_root: str | None,
        temp_prefixes: list[str],
        timeout: float = DEFAULT_PERMISSION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """
        Initialize PermissionBroker.

        Args:
            channel: 外部承認者との通信路
            project_root: パス書き換え先のプロジェクトルート（呼び出しの作業ディレクトリ）
            temp_prefixes: 一時ディレクトリのプレフィックス
            timeout: 応答待機の上限（秒）
            poll_interval: 応答ファイルのポーリング間隔（秒）
        """
        self._channel = channel
        self._project_root = project_root
        self._temp_prefixes = temp_prefixes
        self._timeout = timeout
        self._poll_interval = poll_interval

    async def evaluate(self, tool_name: str | None, tool_input: dict[str, Any]) -> PermissionDecision:
        """
        ツール使用を許可するかどうかを判定する.

        tool_input は一時ディレクトリパスの書き換えのためにその場で変更される.

        Args:
            tool_name: ツール名
            tool_input: ツール入力

        Returns:
            Allow（書き換え後の入力を含む）または Deny（拒否理由を含む）
        """
        logger.debug("Evaluating tool permission", tool_name=tool_name, tool_input=tool_input)
        rewrite_tool_input_paths(tool_name, tool_input, self._project_root, self._temp_prefixes)

        if not tool_name:
            logger.error("No tool name provided", state=PermissionState.DENIED_UNSAFE.value)
            return Deny(message="Tool name is required")

        dangerous = find_dangerous_path(tool_input)
        if dangerous is not None:
            logger.warning(
                "Dangerous path detected, denying",
                tool_name=tool_name,
                path=dangerous,
                state=PermissionState.DENIED_UNSAFE.value,
            )
            return Deny(message=f"Access to sensitive path is not allowed: {dangerous}")

        if tool_name in AUTO_ALLOWED_TOOLS:
            logger.info(
                "Auto-allowing read-only tool",
                tool_name=tool_name,
                state=PermissionState.AUTO_ALLOWED.value,
            )
            return Allow(updated_input=tool_input)

        state = await self._request_approval(tool_name, tool_input)
        if state == PermissionState.ALLOWED:
            logger.info("User allowed tool", tool_name=tool_name)
            return Allow(updated_input=tool_input)
        if state == PermissionState.TIMED_OUT:
            return Deny(message=f"Permission request for {tool_name} timed out")
        logger.info("User denied tool", tool_name=tool_name)
        return Deny(message=f"User denied permission to use {tool_name}")

    async def _request_approval(self, tool_name: str, tool_input: dict[str, Any]) -> PermissionState:
        """
        要求を書き込み、応答をポーリングで待つ.

        Returns:
            ALLOWED / DENIED / TIMED_OUT のいずれか
        """
        request = PermissionRequest(tool_name=tool_name, inputs=tool_input)
        self._channel.write_request(request)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while loop.time() < deadline:
            await asyncio.sleep(self._poll_interval)
            try:
                response = self._channel.take_response(request.request_id)
            except PermissionResponseError:
                logger.exception(
                    "Failed to read permission response, denying",
                    request_id=request.request_id,
                )
                return PermissionState.DENIED
            if response is None:
                continue
            logger.info(
                "Got permission response",
                request_id=request.request_id,
                allow=response.allow,
            )
            return PermissionState.ALLOWED if response.allow else PermissionState.DENIED

        logger.warning(
            "Timeout waiting for permission response, denying by default",
            request_id=request.request_id,
            tool_name=tool_name,
            timeout=self._timeout,
        )
        try:
            self._channel.discard_request(request.request_id)
        except OSError:
            logger.warning(
                "Failed to discard orphaned permission request",
                request_id=request.request_id,
                exc_info=True,
            )
        return PermissionState.TIMED_OUT
