"""File-based permission request/response channel."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

from claude_bridge.application.models import PermissionRequest, PermissionResponse
from claude_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

REQUEST_PREFIX = "request-"
RESPONSE_PREFIX = "response-"


class PermissionResponseError(Exception):
    """応答ファイルの内容が不正な場合の例外."""

    def __init__(self, request_id: str, message: str) -> None:
        """
        Initialize PermissionResponseError.

        Args:
            request_id: 対象のリクエストID
            message: エラーメッセージ
        """
        super().__init__(f"Invalid permission response for {request_id}: {message}")
        self.request_id = request_id


class PermissionChannel(Protocol):
    """Broker から見たパーミッション通信路."""

    def write_request(self, request: PermissionRequest) -> None:
        """要求を書き込む."""
        ...

    def take_response(self, request_id: str) -> PermissionResponse | None:
        """応答を一度だけ取り出す. 未到着ならNone."""
        ...

    def discard_request(self, request_id: str) -> None:
        """応答されなかった要求を破棄する."""
        ...


def parse_response(request_id: str, content: str) -> PermissionResponse:
    """
    応答ファイルの内容を解析する.

    Args:
        request_id: 対象のリクエストID
        content: 応答ファイルの内容

    Returns:
        パーミッション応答

    Raises:
        PermissionResponseError: JSONとして不正、または allow が真偽値でない場合
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise PermissionResponseError(request_id, str(e)) from e

    if not isinstance(data, dict) or not isinstance(data.get("allow"), bool):
        raise PermissionResponseError(request_id, "'allow' must be a boolean")
    return PermissionResponse(allow=data["allow"])


class FilePermissionChannel:
    """ディレクトリ上の request-<id>.json / response-<id>.json による通信路."""

    def __init__(self, directory: Path) -> None:
        """
        Initialize FilePermissionChannel.

        Args:
            directory: 通信ディレクトリ（存在しない場合は作成する）
        """
        self.directory = directory
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.exception(
                "Failed to create permission directory", directory=str(directory)
            )
            raise

    def request_path(self, request_id: str) -> Path:
        """要求ファイルのパスを返す."""
        return self.directory / f"{REQUEST_PREFIX}{request_id}.json"

    def response_path(self, request_id: str) -> Path:
        """応答ファイルのパスを返す."""
        return self.directory / f"{RESPONSE_PREFIX}{request_id}.json"

    def write_request(self, request: PermissionRequest) -> None:
        """
        要求ファイルを書き込む.

        Args:
            request: パーミッション要求
        """
        path = self.request_path(request.request_id)
        self._write_atomic(path, json.dumps(request.to_dict(), indent=2, ensure_ascii=False))
        logger.info(
            "Wrote permission request",
            request_id=request.request_id,
            tool_name=request.tool_name,
            path=str(path),
        )

    def take_response(self, request_id: str) -> PermissionResponse | None:
        """
        応答ファイルを読み込み、直ちに削除する.

        同じ応答を二度読むことはできない（読み込み後に必ず削除する）.

        Args:
            request_id: 対象のリクエストID

        Returns:
            パーミッション応答。応答ファイルが存在しない場合None

        Raises:
            PermissionResponseError: 応答ファイルの内容が不正な場合
        """
        path = self.response_path(request_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        path.unlink(missing_ok=True)
        return parse_response(request_id, content)

    def discard_request(self, request_id: str) -> None:
        """応答されなかった要求ファイルを削除する（存在しなくてもよい）."""
        self.request_path(request_id).unlink(missing_ok=True)

    # 以下は承認者側の操作

    def pending_requests(self) -> list[PermissionRequest]:
        """
        未処理の要求を古い順に返す.

        読み込めない要求ファイルはログに記録してスキップする.

        Returns:
            パーミッション要求のリスト
        """
        requests: list[PermissionRequest] = []
        for path in sorted(self.directory.glob(f"{REQUEST_PREFIX}*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                requests.append(PermissionRequest.from_dict(data))
            except FileNotFoundError:
                # 読み込み前に Broker が破棄した
                continue
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Skipping unreadable permission request", path=str(path))
        return requests

    def write_response(self, request_id: str, allow: bool) -> None:
        """
        応答ファイルを書き込む.

        Broker が書きかけのファイルを読まないよう、一時ファイルからの rename で書き込む.

        Args:
            request_id: 対象のリクエストID
            allow: 許可する場合True
        """
        path = self.response_path(request_id)
        self._write_atomic(path, json.dumps(PermissionResponse(allow=allow).to_dict()))
        logger.info("Wrote permission response", request_id=request_id, allow=allow)

    def remove_request(self, request_id: str) -> None:
        """処理済みの要求ファイルを削除する."""
        self.request_path(request_id).unlink(missing_ok=True)

    def _write_atomic(self, path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
