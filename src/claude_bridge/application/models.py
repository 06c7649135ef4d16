"""Data models for cross-layer communication."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def generate_request_id() -> str:
    """タイムスタンプ（ミリ秒）と乱数から一意なリクエストIDを生成する."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class PermissionMode(str, Enum):
    """ツール使用の仲介方法を決める呼び出し単位の設定."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"

    @classmethod
    def parse(cls, value: str | None) -> PermissionMode:
        """
        文字列をパーミッションモードに変換する.

        未指定・未知の値は DEFAULT（Permission Broker による仲介）として扱う.

        Args:
            value: ホストから渡されたモード文字列

        Returns:
            パーミッションモード
        """
        if value:
            for mode in cls:
                if mode.value == value.strip():
                    return mode
        return cls.DEFAULT


@dataclass(frozen=True)
class PermissionRequest:
    """パーミッション要求（Broker → 外部承認者）."""

    tool_name: str
    inputs: dict[str, Any]
    request_id: str = field(default_factory=generate_request_id)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        """要求ファイルのJSON形式に変換する."""
        return {
            "requestId": self.request_id,
            "toolName": self.tool_name,
            "inputs": self.inputs,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRequest:
        """
        要求ファイルのJSONから復元する.

        Raises:
            KeyError: 必須キーが存在しない場合
        """
        inputs = data.get("inputs")
        return cls(
            tool_name=str(data["toolName"]),
            inputs=inputs if isinstance(inputs, dict) else {},
            request_id=str(data["requestId"]),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass(frozen=True)
class PermissionResponse:
    """パーミッション応答（外部承認者 → Broker）."""

    allow: bool

    def to_dict(self) -> dict[str, Any]:
        """応答ファイルのJSON形式に変換する."""
        return {"allow": self.allow}


@dataclass(frozen=True)
class Allow:
    """ツール使用を許可する判定."""

    updated_input: dict[str, Any]
    behavior: str = "allow"


@dataclass(frozen=True)
class Deny:
    """ツール使用を拒否する判定."""

    message: str
    behavior: str = "deny"


PermissionDecision = Allow | Deny


@dataclass(frozen=True)
class PathRewrite:
    """パス書き換えの記録（診断用）."""

    original: str
    rewritten: str


@dataclass(frozen=True)
class Credentials:
    """解決済みの認証情報."""

    api_key: str
    base_url: str | None
    api_key_source: str
    base_url_source: str

    def as_env(self) -> dict[str, str]:
        """エージェント呼び出しに渡す環境変数を生成する."""
        env = {"ANTHROPIC_API_KEY": self.api_key}
        if self.base_url:
            env["ANTHROPIC_BASE_URL"] = self.base_url
        return env

    def masked_api_key(self) -> str:
        """ログ出力用にマスクしたAPI Keyを返す."""
        if len(self.api_key) <= 15:
            return "***"
        return f"{self.api_key[:10]}...{self.api_key[-5:]}"


@dataclass
class InvocationResult:
    """1回の呼び出しの最終結果（標準出力の最終行）."""

    success: bool
    session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """最終行のJSON形式に変換する."""
        if self.success:
            return {"success": True, "sessionId": self.session_id}
        return {"success": False, "error": self.error or "Unknown error"}
