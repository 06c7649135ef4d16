"""Command line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any, NoReturn, TextIO

import structlog

from claude_bridge.application.approver import ApprovalChoice, PermissionResponder
from claude_bridge.application.history import (
    SessionFileNotFoundError,
    SessionHistoryReader,
)
from claude_bridge.application.session import SessionInvoker
from claude_bridge.infrastructure.claude_client import AgentClient, ClaudeAgentClient
from claude_bridge.infrastructure.logging import get_logger
from claude_bridge.infrastructure.permission_channel import (
    FilePermissionChannel,
    PermissionChannel,
)

if TYPE_CHECKING:
    from claude_bridge.application.models import PermissionRequest
    from claude_bridge.infrastructure.config import Config
    from claude_bridge.presentation.protocol import ProtocolWriter

logger = get_logger(__name__)

# ホスト側が未設定の引数を文字列で渡してくる場合の値
_UNSET_ARGS = frozenset({"", "undefined", "null"})


class CommandError(Exception):
    """コマンドライン引数が不正な場合の例外."""


class BridgeArgumentParser(argparse.ArgumentParser):
    """エラー時に終了せず CommandError を送出する ArgumentParser."""

    def error(self, message: str) -> NoReturn:
        raise CommandError(message)


def _optional_arg(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return None if text in _UNSET_ARGS else text


def build_send_parser() -> BridgeArgumentParser:
    """send <message> [sessionId] [cwd] [permissionMode]."""
    parser = BridgeArgumentParser(prog="claude-bridge send", add_help=False)
    parser.add_argument("message")
    parser.add_argument("session_id", nargs="?")
    parser.add_argument("cwd", nargs="?")
    parser.add_argument("permission_mode", nargs="?")
    return parser


def build_get_session_parser() -> BridgeArgumentParser:
    """getSession <sessionId> [cwd]."""
    parser = BridgeArgumentParser(prog="claude-bridge getSession", add_help=False)
    parser.add_argument("session_id")
    parser.add_argument("cwd", nargs="?")
    return parser


def build_respond_parser() -> BridgeArgumentParser:
    """respond [--watch]."""
    parser = BridgeArgumentParser(prog="claude-bridge respond", add_help=False)
    parser.add_argument("--watch", action="store_true")
    return parser


class TerminalApprover:
    """
    端末で承認者にパーミッション要求の判断を求める.

    要求内容をプロンプト用ストリーム（標準エラー出力）に表示し、入力から1行読み込む.
    入力が終端に達した場合は拒否し、closed をセットする.
    """

    def __init__(self, stdin: TextIO, prompt_stream: TextIO) -> None:
        """
        Initialize TerminalApprover.

        Args:
            stdin: 承認者の入力
            prompt_stream: プロンプトの出力先
        """
        self._stdin = stdin
        self._prompt_stream = prompt_stream
        self.closed = asyncio.Event()

    async def decide(self, request: PermissionRequest) -> ApprovalChoice:
        """要求内容を表示し、承認者の選択を返す."""
        inputs = json.dumps(request.inputs, ensure_ascii=False)
        self._prompt_stream.write(
            f"[{request.request_id}] {request.tool_name} {inputs}\n"
            "Allow? [y]es / [a]lways / [N]o: "
        )
        self._prompt_stream.flush()

        answer = await asyncio.to_thread(self._stdin.readline)
        if not answer:
            self.closed.set()
            return ApprovalChoice.DENY
        return ApprovalChoice.parse(answer)


def read_stdin_request(stream: TextIO) -> dict[str, Any]:
    """
    標準入力から send の引数（JSON）を読み込む.

    Args:
        stream: 入力ストリーム

    Returns:
        message / sessionId / cwd / permissionMode / model を含む辞書

    Raises:
        CommandError: JSONとして解析できない場合、または message がない場合
    """
    try:
        payload = json.loads(stream.read())
    except json.JSONDecodeError as e:
        raise CommandError(f"Invalid JSON on stdin: {e}") from e
    if not isinstance(payload, dict):
        raise CommandError("Invalid JSON on stdin: expected an object")
    if not isinstance(payload.get("message"), str):
        raise CommandError("message is required")
    return payload


class BridgeCli:
    """send / getSession / respond コマンドを実行する."""

    def __init__(
        self,
        config: Config,
        writer: ProtocolWriter,
        client: AgentClient | None = None,
        channel: PermissionChannel | None = None,
        stdin: TextIO | None = None,
        prompt_stream: TextIO | None = None,
    ) -> None:
        """
        Initialize BridgeCli.

        Args:
            config: アプリケーション設定
            writer: 標準出力プロトコルの書き込み先
            client: エージェント呼び出しクライアント（省略時は Claude Agent SDK）
            channel: パーミッション通信路（省略時はファイル通信路）
            stdin: CLAUDE_USE_STDIN 有効時および respond の入力（省略時は標準入力）
            prompt_stream: respond のプロンプト出力先（省略時は標準エラー出力）
        """
        self._config = config
        self._writer = writer
        self._client = client
        self._channel = channel
        self._stdin = stdin
        self._prompt_stream = prompt_stream

    async def run(self, argv: list[str]) -> int:
        """
        コマンドを実行する.

        処理済みの失敗（認証エラー、セッション未検出など）は失敗JSONを出力した上で
        終了コード 0 を返す. 不明なコマンドと引数エラーは 1 を返す.

        Args:
            argv: コマンド名以降の引数

        Returns:
            終了コード
        """
        command = argv[0] if argv else ""
        args = argv[1:]
        structlog.contextvars.bind_contextvars(command=command)
        logger.info("Command received", command=command, arg_count=len(args))

        try:
            if command == "send":
                await self.send(args)
            elif command == "getSession":
                self.get_session(args)
            elif command == "respond":
                await self.respond(args)
            else:
                raise CommandError(f"Unknown command: {command}")
        except CommandError as e:
            logger.error("Invalid command line", command=command, error=str(e))
            self._writer.error(str(e))
            self._writer.fail(str(e))
            return 1
        return 0

    async def send(self, args: list[str]) -> None:
        """send コマンド."""
        model: str | None = None
        if self._config.claude_use_stdin:
            payload = read_stdin_request(self._stdin or sys.stdin)
            message = payload["message"]
            session_id = _optional_arg(payload.get("sessionId"))
            cwd = _optional_arg(payload.get("cwd"))
            permission_mode = _optional_arg(payload.get("permissionMode"))
            model = _optional_arg(payload.get("model"))
        else:
            namespace = build_send_parser().parse_args(["--", *args])
            message = namespace.message
            session_id = _optional_arg(namespace.session_id)
            cwd = _optional_arg(namespace.cwd)
            permission_mode = _optional_arg(namespace.permission_mode)

        invoker = SessionInvoker(
            self._config,
            self._client or ClaudeAgentClient(),
            self._writer,
            self._channel or FilePermissionChannel(self._config.permission_dir()),
        )
        await invoker.send(
            message,
            resume_session_id=session_id,
            cwd=cwd,
            permission_mode=permission_mode,
            model=model,
        )

    def get_session(self, args: list[str]) -> None:
        """getSession コマンド."""
        namespace = build_get_session_parser().parse_args(["--", *args])
        reader = SessionHistoryReader(self._config.claude_projects_dir)
        try:
            messages = reader.read_messages(
                namespace.session_id, _optional_arg(namespace.cwd)
            )
        except SessionFileNotFoundError as e:
            self._writer.fail(str(e))
            return
        except OSError as e:
            logger.exception("Failed to read session history", session_id=namespace.session_id)
            self._writer.error(str(e))
            self._writer.fail(str(e))
            return
        self._writer.finish({"success": True, "messages": messages})

    async def respond(self, args: list[str]) -> None:
        """
        respond コマンド.

        未処理のパーミッション要求を端末で承認者に確認し、応答ファイルを書き込む.
        --watch 指定時は入力が終端に達するまで新しい要求を待ち続ける.
        """
        namespace = build_respond_parser().parse_args(args)
        channel = FilePermissionChannel(self._config.permission_dir())
        approver = TerminalApprover(self._stdin or sys.stdin, self._prompt_stream or sys.stderr)
        responder = PermissionResponder(
            channel, approver.decide, decision_timeout=self._config.permission_timeout
        )

        if namespace.watch:
            await responder.run(approver.closed, poll_interval=self._config.permission_poll_interval)
        else:
            await responder.process_pending()

        logger.info("Permission requests handled", handled=responder.handled_count)
        self._writer.finish({"success": True, "handled": responder.handled_count})
