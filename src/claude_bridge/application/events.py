"""Agent event types."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class TextContent(BaseModel):
    """テキストブロック."""

    type: Literal["text"] = "text"
    text: str


class ThinkingContent(BaseModel):
    """思考ブロック."""

    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolUseContent(BaseModel):
    """ツール使用ブロック."""

    model_config = ConfigDict(extra="allow")

    type: Literal["tool_use"] = "tool_use"
    id: str | None = None
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class UnknownContent(BaseModel):
    """未知のブロック（そのまま転送する）."""

    model_config = ConfigDict(extra="allow")

    type: str = "unknown"


ContentBlock = TextContent | ThinkingContent | ToolUseContent | UnknownContent

_CONTENT_TYPES: dict[str, type[BaseModel]] = {
    "text": TextContent,
    "thinking": ThinkingContent,
    "tool_use": ToolUseContent,
}


def parse_content_block(raw: Any) -> ContentBlock:
    """
    コンテンツブロックを解析する.

    既知の型でも形が不正な場合は UnknownContent として扱う.
    """
    if not isinstance(raw, dict):
        return UnknownContent(value=raw)
    model = _CONTENT_TYPES.get(str(raw.get("type")))
    if model is not None:
        try:
            return model.model_validate(raw)  # type: ignore[return-value]
        except ValidationError:
            pass
    return UnknownContent.model_validate(
        {**raw, "type": str(raw.get("type") or "unknown")}
    )


class AgentEvent(BaseModel):
    """エージェントから受信したイベント（受信時の生データを保持する）."""

    model_config = ConfigDict(frozen=True)

    raw: dict[str, Any]

    @property
    def type(self) -> str:
        """イベント種別."""
        return str(self.raw.get("type", "unknown"))

    def to_json(self) -> str:
        """受信したイベントをそのままJSONにシリアライズする."""
        return json.dumps(self.raw, ensure_ascii=False, default=str)


class SystemEvent(AgentEvent):
    """system イベント（セッションIDの正となる値を含む）."""

    subtype: str | None = None
    session_id: str | None = None


class AssistantEvent(AgentEvent):
    """assistant イベント."""

    content: list[ContentBlock] | str = Field(default_factory=list)


class UserEvent(AgentEvent):
    """user イベント（ツール結果など）."""


class ResultEvent(AgentEvent):
    """result イベント（呼び出しの終端）."""

    session_id: str | None = None
    is_error: bool = False
    result: str | None = None


class UnknownEvent(AgentEvent):
    """未知のイベント（そのまま転送する）."""


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_event(raw: dict[str, Any]) -> AgentEvent:
    """
    生のイベント辞書を型付きイベントに変換する.

    Args:
        raw: エージェントから受信したイベント

    Returns:
        型付きイベント（未知の種別は UnknownEvent）
    """
    event_type = raw.get("type")

    if event_type == "system":
        return SystemEvent(
            raw=raw,
            subtype=_optional_str(raw.get("subtype")),
            session_id=_optional_str(raw.get("session_id")),
        )

    if event_type == "assistant":
        message = raw.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return AssistantEvent(raw=raw, content=content)
        blocks = [parse_content_block(b) for b in content] if isinstance(content, list) else []
        return AssistantEvent(raw=raw, content=blocks)

    if event_type == "user":
        return UserEvent(raw=raw)

    if event_type == "result":
        return ResultEvent(
            raw=raw,
            session_id=_optional_str(raw.get("session_id")),
            is_error=bool(raw.get("is_error", False)),
            result=_optional_str(raw.get("result")),
        )

    return UnknownEvent(raw=raw)
