"""Claude Agent SDK client wrapper."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from claude_bridge.application.events import AgentEvent, ResultEvent, parse_event
from claude_bridge.application.models import Allow, PermissionDecision
from claude_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# コールバック型定義
PermissionCallback = Callable[[str, dict[str, Any]], Awaitable[PermissionDecision]]


@dataclass
class AgentRequest:
    """1回のエージェント呼び出しの内容."""

    prompt: str
    cwd: Path
    permission_mode: str
    model: str
    max_turns: int
    add_dirs: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    resume: str | None = None
    permission_callback: PermissionCallback | None = None


class AgentClient(Protocol):
    """SessionInvoker から見たエージェント呼び出し口."""

    def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        """呼び出しを開始し、イベントを受信順に返す."""
        ...


def content_block_to_raw(block: Any) -> dict[str, Any]:
    """SDK のコンテンツブロックを生の辞書形式に変換する."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking, "signature": block.signature}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    if dataclasses.is_dataclass(block) and not isinstance(block, type):
        return {"type": type(block).__name__, **dataclasses.asdict(block)}
    return {"type": "unknown", "value": repr(block)}


def message_to_raw(message: Any) -> dict[str, Any]:
    """
    SDK のメッセージを生のイベント辞書に変換する.

    外部コントローラーが解析する [MESSAGE] 行の形式
    （type / message.content / session_id など）に揃える.

    Args:
        message: SDK から受信したメッセージ

    Returns:
        イベント辞書
    """
    if isinstance(message, SystemMessage):
        raw = dict(message.data)
        raw.setdefault("type", "system")
        raw.setdefault("subtype", message.subtype)
        return raw

    if isinstance(message, AssistantMessage):
        return {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "model": message.model,
                "content": [content_block_to_raw(b) for b in message.content],
            },
            "parent_tool_use_id": message.parent_tool_use_id,
        }

    if isinstance(message, UserMessage):
        content: Any = message.content
        if not isinstance(content, str):
            content = [content_block_to_raw(b) for b in content]
        return {
            "type": "user",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": message.parent_tool_use_id,
        }

    if isinstance(message, ResultMessage):
        return {"type": "result", **dataclasses.asdict(message)}

    if dataclasses.is_dataclass(message) and not isinstance(message, type):
        return {"type": type(message).__name__, **dataclasses.asdict(message)}

    return {"type": "unknown", "value": repr(message)}


def to_permission_result(
    decision: PermissionDecision,
) -> PermissionResultAllow | PermissionResultDeny:
    """Broker の判定を SDK の PermissionResult に変換する."""
    if isinstance(decision, Allow):
        return PermissionResultAllow(updated_input=decision.updated_input)
    return PermissionResultDeny(message=decision.message)


def build_permission_handler(
    callback: PermissionCallback,
) -> Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResultAllow | PermissionResultDeny],
]:
    """
    Broker を SDK の can_use_tool コールバックに適合させる.

    判定中の例外は呼び出し全体を中断させず、そのツール使用のみを拒否する.

    Args:
        callback: ツール名と入力から判定を返すコールバック

    Returns:
        can_use_tool コールバック
    """

    async def can_use_tool(
        tool_name: str,
        input_data: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        try:
            decision = await callback(tool_name, input_data)
        except Exception:
            logger.exception("Error in permission callback, denying", tool_name=tool_name)
            return PermissionResultDeny(message=f"Permission check failed for {tool_name}")
        return to_permission_result(decision)

    return can_use_tool


async def _prompt_stream(
    prompt: str, finished: asyncio.Event
) -> AsyncIterator[dict[str, Any]]:
    """
    ストリーミングモード用のプロンプトを生成する.

    can_use_tool の制御メッセージを受け取るため、result を受信するまで入力を閉じない.
    """
    yield {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
        "session_id": "default",
    }
    await finished.wait()


class ClaudeAgentClient:
    """Claude Agent SDK の query() を呼び出すクライアント."""

    def build_options(self, request: AgentRequest) -> ClaudeAgentOptions:
        """
        呼び出しオプションを構築する.

        Args:
            request: 呼び出し内容

        Returns:
            ClaudeAgentOptions
        """
        can_use_tool = (
            build_permission_handler(request.permission_callback)
            if request.permission_callback is not None
            else None
        )
        options = ClaudeAgentOptions(
            cwd=str(request.cwd),
            permission_mode=request.permission_mode,  # type: ignore[arg-type]
            model=request.model,
            max_turns=request.max_turns,
            add_dirs=list(request.add_dirs),
            env=dict(request.env),
            can_use_tool=can_use_tool,
        )
        if request.resume:
            options.resume = request.resume
        return options

    async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        """
        エージェントを呼び出し、受信したイベントを順に返す.

        Args:
            request: 呼び出し内容

        Yields:
            受信順のイベント
        """
        options = self.build_options(request)
        finished = asyncio.Event()
        logger.info(
            "Starting agent query",
            cwd=str(request.cwd),
            permission_mode=request.permission_mode,
            model=request.model,
            resume=request.resume,
        )

        try:
            async for message in query(
                prompt=_prompt_stream(request.prompt, finished), options=options
            ):
                event = parse_event(message_to_raw(message))
                if isinstance(event, ResultEvent):
                    finished.set()
                yield event
        finally:
            finished.set()
