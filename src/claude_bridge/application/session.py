"""Session invocation service."""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from claude_bridge.application.credentials import (
    CredentialsNotConfiguredError,
    resolve_credentials,
)
from claude_bridge.application.events import (
    AgentEvent,
    AssistantEvent,
    SystemEvent,
    TextContent,
    ToolUseContent,
)
from claude_bridge.application.models import InvocationResult, PermissionMode
from claude_bridge.application.paths import temp_prefixes
from claude_bridge.application.permission import PermissionBroker
from claude_bridge.application.workspace import (
    apply_working_directory,
    select_working_directory,
)
from claude_bridge.infrastructure.claude_client import AgentClient, AgentRequest
from claude_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from claude_bridge.infrastructure.config import Config
    from claude_bridge.infrastructure.permission_channel import PermissionChannel

logger = get_logger(__name__)

ABORTED_MESSAGE = "Claude Code process aborted by user"


class InvocationState(str, Enum):
    """1回の呼び出しの状態."""

    INIT = "init"
    CREDENTIALS_RESOLVED = "credentials_resolved"
    CWD_RESOLVED = "cwd_resolved"
    QUERY_RACING = "query_racing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class InvocationTimeoutError(Exception):
    """最初のイベントが制限時間内に届かなかった場合の例外."""

    def __init__(self, timeout: float) -> None:
        """
        Initialize InvocationTimeoutError.

        Args:
            timeout: 制限時間（秒）
        """
        super().__init__(ABORTED_MESSAGE)
        self.timeout = timeout


class EventSink(Protocol):
    """呼び出しの出力先（標準出力プロトコル）."""

    def message_start(self) -> None: ...

    def message_end(self) -> None: ...

    def message(self, payload: str) -> None: ...

    def content(self, text: str) -> None: ...

    def tool_use(self, payload: str) -> None: ...

    def session_id(self, session_id: str) -> None: ...

    def resuming(self, session_id: str) -> None: ...

    def debug(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...

    def finish(self, result: dict[str, Any]) -> bool: ...


class SessionInvoker:
    """
    エージェントへの1回の呼び出しを実行する.

    認証情報と作業ディレクトリを解決してからエージェントを呼び出し、
    受信したイベントをタグ付きの行として出力する. 1プロセスにつき1回だけ使用する.
    """

    def __init__(
        self,
        config: Config,
        client: AgentClient,
        sink: EventSink,
        channel: PermissionChannel,
    ) -> None:
        """
        Initialize SessionInvoker.

        Args:
            config: アプリケーション設定
            client: エージェント呼び出しクライアント
            sink: イベントの出力先
            channel: パーミッション要求の通信路
        """
        self._config = config
        self._client = client
        self._sink = sink
        self._channel = channel
        self.state = InvocationState.INIT
        self.session_id: str | None = None

    async def send(
        self,
        message: str,
        resume_session_id: str | None = None,
        cwd: str | None = None,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> InvocationResult:
        """
        メッセージを送信し、応答をストリーミング出力する.

        Args:
            message: 送信するプロンプト
            resume_session_id: 再開するセッションID（空文字列は新規セッション扱い）
            cwd: 呼び出し元が指定する作業ディレクトリ
            permission_mode: パーミッションモード（未指定は default）
            model: モデルの上書き（未指定は設定値）

        Returns:
            呼び出し結果（最終行として出力済み）
        """
        self.session_id = resume_session_id or None
        try:
            await self._run(message, cwd, permission_mode, model)
        except InvocationTimeoutError as e:
            self.state = InvocationState.TIMED_OUT
            logger.error("Agent query timed out", timeout=e.timeout)
            result = InvocationResult(success=False, error=str(e))
        except CredentialsNotConfiguredError as e:
            self.state = InvocationState.FAILED
            self._sink.error(str(e))
            result = InvocationResult(success=False, error=str(e))
        except Exception as e:
            self.state = InvocationState.FAILED
            logger.exception("Agent invocation failed", state=self.state.value)
            self._sink.error(str(e))
            result = InvocationResult(success=False, error=str(e) or type(e).__name__)
        else:
            self.state = InvocationState.COMPLETED
            result = InvocationResult(success=True, session_id=self.session_id)

        logger.info(
            "Agent invocation finished",
            state=self.state.value,
            success=result.success,
            session_id=self.session_id,
        )
        self._sink.finish(result.to_dict())
        return result

    async def _run(
        self,
        message: str,
        cwd: str | None,
        permission_mode: str | None,
        model: str | None,
    ) -> None:
        credentials = resolve_credentials(self._config)
        self.state = InvocationState.CREDENTIALS_RESOLVED
        self._sink.debug(
            f"API Key source: {credentials.api_key_source}, "
            f"base URL source: {credentials.base_url_source}"
        )

        self._sink.message_start()

        working_directory = select_working_directory(cwd, self._config)
        apply_working_directory(working_directory)
        self.state = InvocationState.CWD_RESOLVED
        self._sink.debug(f"Using working directory: {working_directory}")

        mode = PermissionMode.parse(permission_mode)
        broker: PermissionBroker | None = None
        if mode == PermissionMode.DEFAULT:
            broker = PermissionBroker(
                self._channel,
                project_root=str(working_directory),
                temp_prefixes=temp_prefixes(self._config.tmpdir),
                timeout=self._config.permission_timeout,
                poll_interval=self._config.permission_poll_interval,
            )

        request = AgentRequest(
            prompt=message,
            cwd=working_directory,
            permission_mode=mode.value,
            model=model or self._config.claude_model,
            max_turns=self._config.claude_max_turns,
            add_dirs=self._config.additional_directories(working_directory),
            env=credentials.as_env(),
            resume=self.session_id,
            permission_callback=broker.evaluate if broker is not None else None,
        )
        if request.resume:
            self._sink.resuming(request.resume)

        logger.info(
            "Invoking agent",
            cwd=str(working_directory),
            permission_mode=mode.value,
            model=request.model,
            resume=request.resume,
        )

        self.state = InvocationState.QUERY_RACING
        events = self._client.stream(request)
        try:
            await self._consume(events)
        finally:
            await self._close_stream(events)

        self._sink.message_end()

    async def _consume(self, events: AsyncIterator[AgentEvent]) -> None:
        """
        イベントストリームを消費する.

        最初のイベントの受信は query_timeout で打ち切る. 同じタスク内で待機するため、
        SDK 内部のタスクグループがタスクをまたぐことはない.
        """
        iterator = aiter(events)
        try:
            async with asyncio.timeout(self._config.query_timeout):
                first = await anext(iterator)
        except StopAsyncIteration:
            logger.warning("Agent returned no events")
            return
        except TimeoutError as e:
            raise InvocationTimeoutError(self._config.query_timeout) from e

        self.state = InvocationState.STREAMING
        count = 1
        self._handle_event(first)
        async for event in iterator:
            count += 1
            self._handle_event(event)
        logger.info("Message stream completed", message_count=count)

    def _handle_event(self, event: AgentEvent) -> None:
        """イベントを転送し、必要に応じて補助行の出力とセッションIDの更新を行う."""
        self._sink.message(event.to_json())

        if isinstance(event, AssistantEvent):
            if isinstance(event.content, str):
                self._sink.content(event.content)
            else:
                for block in event.content:
                    if isinstance(block, TextContent):
                        self._sink.content(block.text)
                    elif isinstance(block, ToolUseContent):
                        self._sink.tool_use(json.dumps(block.model_dump(), ensure_ascii=False))

        if (
            isinstance(event, SystemEvent)
            and event.session_id
            and event.session_id != self.session_id
        ):
            self.session_id = event.session_id
            self._sink.session_id(event.session_id)
            logger.info("Session ID captured", session_id=event.session_id)

    async def _close_stream(self, events: AsyncIterator[AgentEvent]) -> None:
        aclose = getattr(events, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.warning("Error while closing agent stream", exc_info=True)
