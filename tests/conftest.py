"""Shared test fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from claude_bridge.application.models import PermissionRequest, PermissionResponse
from claude_bridge.infrastructure.config import Config
from claude_bridge.infrastructure.permission_channel import parse_response

if TYPE_CHECKING:
    from pathlib import Path

_BRIDGE_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_BASE_URL",
    "CLAUDE_SETTINGS_FILE",
    "CLAUDE_PROJECTS_DIR",
    "IDEA_PROJECT_PATH",
    "PROJECT_PATH",
    "TMPDIR",
    "CLAUDE_PERMISSION_DIR",
    "PERMISSION_TIMEOUT",
    "PERMISSION_POLL_INTERVAL",
    "CLAUDE_USE_STDIN",
    "CLAUDE_MODEL",
    "CLAUDE_MAX_TURNS",
    "QUERY_TIMEOUT",
    "BRIDGE_DEBUG",
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_BACKUP_COUNT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """実行環境の設定値がテストに影響しないよう環境変数を削除する."""
    for name in _BRIDGE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """テスト用のConfigインスタンスを作成する."""
    return Config(
        _env_file=None,  # type: ignore[call-arg]
        anthropic_api_key="sk-ant-test-key-0123456789",
        claude_settings_file=tmp_path / "settings.json",
        claude_projects_dir=tmp_path / "projects",
        claude_permission_dir=tmp_path / "permissions",
        log_dir=tmp_path / "logs",
        permission_timeout=0.5,
        permission_poll_interval=0.01,
        query_timeout=5.0,
    )


class InMemoryPermissionChannel:
    """テスト用のメモリ上の通信路."""

    def __init__(self) -> None:
        self.requests: dict[str, PermissionRequest] = {}
        self.responses: dict[str, str | PermissionResponse] = {}
        self.discarded: list[str] = []
        self.auto_response: bool | str | None = None

    def write_request(self, request: PermissionRequest) -> None:
        self.requests[request.request_id] = request
        if isinstance(self.auto_response, str):
            self.responses[request.request_id] = self.auto_response
        elif self.auto_response is not None:
            self.responses[request.request_id] = PermissionResponse(allow=self.auto_response)

    def take_response(self, request_id: str) -> PermissionResponse | None:
        response = self.responses.pop(request_id, None)
        if isinstance(response, str):
            return parse_response(request_id, response)
        return response

    def discard_request(self, request_id: str) -> None:
        self.requests.pop(request_id, None)
        self.discarded.append(request_id)


@pytest.fixture
def channel() -> InMemoryPermissionChannel:
    """テスト用のメモリ上の通信路を作成する."""
    return InMemoryPermissionChannel()
