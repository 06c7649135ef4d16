"""Tests for the session invocation service."""

from __future__ import annotations

import asyncio
import io
import json
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import pytest

from claude_bridge.application.events import AgentEvent, parse_event
from claude_bridge.application.models import Allow, Deny
from claude_bridge.application.session import (
    InvocationState,
    SessionInvoker,
)
from claude_bridge.presentation.protocol import ProtocolWriter

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import InMemoryPermissionChannel

    from claude_bridge.infrastructure.claude_client import AgentRequest
    from claude_bridge.infrastructure.config import Config


SYSTEM_INIT = {"type": "system", "subtype": "init", "session_id": "new-session"}
ASSISTANT_REPLY = {
    "type": "assistant",
    "message": {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Line one\nLine two"},
            {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
        ],
    },
}
RESULT = {"type": "result", "subtype": "success", "session_id": "new-session"}


class FakeAgentClient:
    """受信イベントを固定で返すテスト用クライアント."""

    def __init__(
        self,
        raws: list[dict[str, Any]],
        first_delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.raws = raws
        self.first_delay = first_delay
        self.error = error
        self.requests: list[AgentRequest] = []
        self.closed = False

    async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        self.requests.append(request)
        try:
            if self.first_delay:
                await asyncio.sleep(self.first_delay)
            for raw in self.raws:
                yield parse_event(raw)
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """呼び出しの作業ディレクトリを作成する（テスト後にカレントディレクトリを戻す）."""
    monkeypatch.chdir(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def output() -> io.StringIO:
    """標準出力の代わりのバッファを作成する."""
    return io.StringIO()


def _invoker(
    config: Config,
    client: FakeAgentClient,
    output: io.StringIO,
    channel: InMemoryPermissionChannel,
    debug: bool = False,
) -> SessionInvoker:
    return SessionInvoker(config, client, ProtocolWriter(output, debug=debug), channel)


def _lines(output: io.StringIO) -> list[str]:
    return output.getvalue().splitlines()


def _final(output: io.StringIO) -> dict[str, Any]:
    return json.loads(_lines(output)[-1])


class TestSessionInvoker:
    """SessionInvoker のテスト."""

    @pytest.mark.asyncio
    async def test_new_session_stream(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """新規セッションの出力順序と最終行を確認する."""
        client = FakeAgentClient([SYSTEM_INIT, ASSISTANT_REPLY, RESULT])
        invoker = _invoker(config, client, output, channel)

        result = await invoker.send("hello", cwd=str(workdir))

        assert result.success is True
        assert result.session_id == "new-session"
        assert invoker.state == InvocationState.COMPLETED
        lines = _lines(output)
        assert lines[0] == "[MESSAGE_START]"
        assert lines[1] == f"[MESSAGE] {json.dumps(SYSTEM_INIT)}"
        assert lines[2] == "[SESSION_ID] new-session"
        assert lines[3].startswith("[MESSAGE] ")
        assert json.loads(lines[3].removeprefix("[MESSAGE] ")) == ASSISTANT_REPLY
        assert lines[4] == "[CONTENT] Line one\\nLine two"
        assert lines[5].startswith("[TOOL_USE] ")
        assert json.loads(lines[5].removeprefix("[TOOL_USE] "))["name"] == "Bash"
        assert lines[6].startswith("[MESSAGE] ")
        assert lines[7] == "[MESSAGE_END]"
        assert json.loads(lines[8]) == {"success": True, "sessionId": "new-session"}
        assert len(lines) == 9
        assert client.closed is True

    @pytest.mark.asyncio
    async def test_agent_request(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """エージェント呼び出しの内容が解決済みの値から構築されることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send("hello", cwd=str(workdir))

        request = client.requests[0]
        assert request.prompt == "hello"
        assert request.cwd == workdir.resolve()
        assert request.permission_mode == "default"
        assert request.model == "sonnet"
        assert request.max_turns == 100
        assert request.add_dirs == [str(workdir.resolve())]
        assert request.env == {"ANTHROPIC_API_KEY": "sk-ant-test-key-0123456789"}
        assert request.resume is None
        assert request.permission_callback is not None

    @pytest.mark.asyncio
    async def test_resume_session(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """再開時は [RESUMING] が出力され、同じIDでは [SESSION_ID] が出力されないことを確認する."""
        client = FakeAgentClient(
            [{"type": "system", "subtype": "init", "session_id": "existing"}, RESULT]
        )

        result = await _invoker(config, client, output, channel).send(
            "continue", resume_session_id="existing", cwd=str(workdir)
        )

        assert client.requests[0].resume == "existing"
        lines = _lines(output)
        assert "[RESUMING] existing" in lines
        assert "[SESSION_ID] existing" not in lines
        assert result.session_id == "existing"

    @pytest.mark.asyncio
    async def test_session_id_overwritten_by_system_event(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """system イベントのセッションIDが再開IDを上書きすることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        result = await _invoker(config, client, output, channel).send(
            "continue", resume_session_id="old-session", cwd=str(workdir)
        )

        assert "[SESSION_ID] new-session" in _lines(output)
        assert _final(output) == {"success": True, "sessionId": "new-session"}
        assert result.session_id == "new-session"

    @pytest.mark.asyncio
    async def test_empty_resume_id_is_new_session(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """空文字列の再開IDは新規セッションとして扱われることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send(
            "hello", resume_session_id="", cwd=str(workdir)
        )

        assert client.requests[0].resume is None
        assert not any(line.startswith("[RESUMING]") for line in _lines(output))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["acceptEdits", "plan", "bypassPermissions"])
    async def test_non_default_mode_has_no_callback(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
        mode: str,
    ) -> None:
        """default 以外のモードではパーミッションコールバックを渡さないことを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send(
            "hello", cwd=str(workdir), permission_mode=mode
        )

        assert client.requests[0].permission_mode == mode
        assert client.requests[0].permission_callback is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [None, "", "unknown"])
    async def test_unset_mode_is_default(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
        mode: str | None,
    ) -> None:
        """未指定・未知のモードは default として扱われることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send(
            "hello", cwd=str(workdir), permission_mode=mode
        )

        assert client.requests[0].permission_mode == "default"
        assert client.requests[0].permission_callback is not None

    @pytest.mark.asyncio
    async def test_model_override(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """モデルの上書きが呼び出しに反映されることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send(
            "hello", cwd=str(workdir), model="opus"
        )

        assert client.requests[0].model == "opus"

    @pytest.mark.asyncio
    async def test_permission_callback_uses_broker(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """渡されたコールバックが作業ディレクトリを基準に判定することを確認する."""
        channel.auto_response = True
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel).send("hello", cwd=str(workdir))

        callback = client.requests[0].permission_callback
        assert callback is not None
        assert await callback("Read", {"file_path": "a.py"}) == Allow(
            updated_input={"file_path": "a.py"}
        )
        assert isinstance(await callback("Write", {"file_path": "/etc/hosts"}), Deny)
        decision = await callback("Write", {"file_path": "/tmp/out/a.txt"})
        assert decision == Allow(
            updated_input={"file_path": str(workdir.resolve() / "out" / "a.txt")}
        )

    @pytest.mark.asyncio
    async def test_missing_credentials(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """API Key がない場合はエージェントを呼ばずに失敗することを確認する."""
        config.anthropic_api_key = None
        client = FakeAgentClient([SYSTEM_INIT, RESULT])
        invoker = _invoker(config, client, output, channel)

        result = await invoker.send("hello", cwd=str(workdir))

        assert result.success is False
        assert client.requests == []
        assert invoker.state == InvocationState.FAILED
        assert "[MESSAGE_START]" not in _lines(output)
        assert _final(output) == {"success": False, "error": "API Key not configured"}

    @pytest.mark.asyncio
    async def test_first_event_timeout(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """最初のイベントが届かない場合にタイムアウトで失敗することを確認する."""
        config.query_timeout = 0.05
        client = FakeAgentClient([SYSTEM_INIT, RESULT], first_delay=5.0)
        invoker = _invoker(config, client, output, channel)

        result = await invoker.send("hello", cwd=str(workdir))

        assert result.success is False
        assert invoker.state == InvocationState.TIMED_OUT
        assert not any(line.startswith("[MESSAGE]") for line in _lines(output))
        assert "[MESSAGE_END]" not in _lines(output)
        assert _final(output) == {
            "success": False,
            "error": "Claude Code process aborted by user",
        }
        assert client.closed is True

    @pytest.mark.asyncio
    async def test_stream_error(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """ストリーム中の例外が失敗の最終行になることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT], error=RuntimeError("CLI exited with code 1"))
        invoker = _invoker(config, client, output, channel)

        result = await invoker.send("hello", cwd=str(workdir))

        assert result.success is False
        assert invoker.state == InvocationState.FAILED
        lines = _lines(output)
        assert "[SESSION_ID] new-session" in lines
        assert "[ERROR] CLI exited with code 1" in lines
        assert _final(output) == {"success": False, "error": "CLI exited with code 1"}

    @pytest.mark.asyncio
    async def test_debug_lines(
        self,
        config: Config,
        workdir: Path,
        output: io.StringIO,
        channel: InMemoryPermissionChannel,
    ) -> None:
        """debug 有効時に [DEBUG] 行が出力されることを確認する."""
        client = FakeAgentClient([SYSTEM_INIT, RESULT])

        await _invoker(config, client, output, channel, debug=True).send(
            "hello", cwd=str(workdir)
        )

        debug_lines = [line for line in _lines(output) if line.startswith("[DEBUG]")]
        assert any("environment" in line for line in debug_lines)
        assert any(str(workdir.resolve()) in line for line in debug_lines)
