"""Approver side of the file-based permission protocol."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

from claude_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from claude_bridge.application.models import PermissionRequest
    from claude_bridge.infrastructure.permission_channel import FilePermissionChannel

logger = get_logger(__name__)


class ApprovalChoice(str, Enum):
    """承認者の選択."""

    ALLOW = "allow"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"

    @property
    def is_allow(self) -> bool:
        """許可系の選択かどうか."""
        return self in {ApprovalChoice.ALLOW, ApprovalChoice.ALLOW_ALWAYS}

    @classmethod
    def parse(cls, answer: str) -> ApprovalChoice:
        """
        承認者の入力を選択に変換する.

        "y" / "yes" / "allow" は許可、"a" / "always" は常に許可、それ以外は拒否.

        Args:
            answer: 入力された文字列

        Returns:
            承認者の選択
        """
        normalized = answer.strip().lower()
        if normalized in {"y", "yes", "allow"}:
            return cls.ALLOW
        if normalized in {"a", "always", "allow_always"}:
            return cls.ALLOW_ALWAYS
        return cls.DENY


# コールバック型定義
DecisionCallback = Callable[["PermissionRequest"], Awaitable[ApprovalChoice]]


def memory_key(request: PermissionRequest) -> str:
    """「常に許可」の記憶に使うキー（ツール名 + 入力内容）."""
    return f"{request.tool_name}:{json.dumps(request.inputs, sort_keys=True, ensure_ascii=False)}"


class PermissionResponder:
    """
    要求ファイルを検出し、承認者の判断を応答ファイルとして書き込む.

    「常に許可」が選ばれたツール呼び出しは記憶し、同じ内容の要求には
    コールバックを呼ばずに許可を返す.
    """

    def __init__(
        self,
        channel: FilePermissionChannel,
        decide: DecisionCallback,
        decision_timeout: float = 30.0,
    ) -> None:
        """
        Initialize PermissionResponder.

        Args:
            channel: ファイル通信路
            decide: 要求ごとに承認者の選択を返すコールバック
            decision_timeout: コールバックの待機上限（秒）. 超過時は拒否する
        """
        self._channel = channel
        self._decide = decide
        self._decision_timeout = decision_timeout
        self._memory: dict[str, ApprovalChoice] = {}
        self.handled_count = 0

    async def process_pending(self) -> int:
        """
        未処理の要求をすべて処理する.

        Returns:
            処理した要求の数
        """
        handled = 0
        for request in self._channel.pending_requests():
            choice = await self._resolve_choice(request)
            self._channel.write_response(request.request_id, choice.is_allow)
            self._channel.remove_request(request.request_id)
            handled += 1
        self.handled_count += handled
        return handled

    async def run(self, stop_event: asyncio.Event, poll_interval: float = 0.5) -> None:
        """
        停止イベントがセットされるまで要求を処理し続ける.

        Args:
            stop_event: 停止イベント
            poll_interval: ディレクトリのポーリング間隔（秒）
        """
        logger.info("Permission responder started", directory=str(self._channel.directory))
        while not stop_event.is_set():
            try:
                await self.process_pending()
            except OSError:
                logger.exception("Error while processing permission requests")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except TimeoutError:
                pass
        logger.info("Permission responder stopped")

    async def _resolve_choice(self, request: PermissionRequest) -> ApprovalChoice:
        key = memory_key(request)
        remembered = self._memory.get(key)
        if remembered is not None:
            logger.info(
                "Using remembered permission decision",
                request_id=request.request_id,
                tool_name=request.tool_name,
            )
            return remembered

        try:
            choice = await asyncio.wait_for(
                self._decide(request), timeout=self._decision_timeout
            )
        except TimeoutError:
            logger.warning(
                "Permission decision timed out, denying",
                request_id=request.request_id,
            )
            return ApprovalChoice.DENY
        except Exception:
            logger.exception(
                "Error in permission decision callback, denying",
                request_id=request.request_id,
            )
            return ApprovalChoice.DENY

        if choice == ApprovalChoice.ALLOW_ALWAYS:
            self._memory[key] = choice
        return choice
