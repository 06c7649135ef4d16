"""API credential resolution."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from claude_bridge.application.models import Credentials
from claude_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

    from claude_bridge.infrastructure.config import Config

logger = get_logger(__name__)

SOURCE_SETTINGS = "settings.json"
SOURCE_ENVIRONMENT = "environment"
SOURCE_DEFAULT = "default"


class CredentialsNotConfiguredError(Exception):
    """API Keyがどこにも設定されていない場合の例外."""

    def __init__(self) -> None:
        """Initialize CredentialsNotConfiguredError."""
        super().__init__("API Key not configured")


def load_settings_env(settings_file: Path) -> dict[str, Any]:
    """
    ローカル設定ファイルの env ブロックを読み込む.

    ファイルが存在しない、または読み込めない場合は空の辞書を返す.

    Args:
        settings_file: settings.json のパス

    Returns:
        env ブロックの内容
    """
    if not settings_file.exists():
        return {}

    try:
        settings = json.loads(settings_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning(
            "Failed to read settings file, ignoring",
            settings_file=str(settings_file),
            exc_info=True,
        )
        return {}

    if not isinstance(settings, dict):
        return {}
    env = settings.get("env")
    return env if isinstance(env, dict) else {}


def _non_empty(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_credentials(config: Config) -> Credentials:
    """
    API Key とベースURLを解決する.

    API Key: settings.json の ANTHROPIC_API_KEY > settings.json の
    ANTHROPIC_AUTH_TOKEN > 環境変数 ANTHROPIC_API_KEY.
    ベースURL: settings.json の ANTHROPIC_BASE_URL > 環境変数 ANTHROPIC_BASE_URL.
    2つの優先順位チェーンは互いに独立している.

    Args:
        config: アプリケーション設定

    Returns:
        解決済みの認証情報

    Raises:
        CredentialsNotConfiguredError: API Key が見つからない場合
    """
    settings_env = load_settings_env(config.claude_settings_file)

    api_key: str | None = None
    api_key_source = SOURCE_DEFAULT
    for candidate, source in (
        (settings_env.get("ANTHROPIC_API_KEY"), SOURCE_SETTINGS),
        (settings_env.get("ANTHROPIC_AUTH_TOKEN"), SOURCE_SETTINGS),
        (config.anthropic_api_key, SOURCE_ENVIRONMENT),
    ):
        api_key = _non_empty(candidate)
        if api_key is not None:
            api_key_source = source
            break

    base_url: str | None = None
    base_url_source = SOURCE_DEFAULT
    for candidate, source in (
        (settings_env.get("ANTHROPIC_BASE_URL"), SOURCE_SETTINGS),
        (config.anthropic_base_url, SOURCE_ENVIRONMENT),
    ):
        base_url = _non_empty(candidate)
        if base_url is not None:
            base_url_source = source
            break

    if api_key is None:
        logger.error(
            "API Key not configured. Set ANTHROPIC_API_KEY in environment or settings file",
            settings_file=str(config.claude_settings_file),
        )
        raise CredentialsNotConfiguredError

    credentials = Credentials(
        api_key=api_key,
        base_url=base_url,
        api_key_source=api_key_source,
        base_url_source=base_url_source,
    )
    logger.info(
        "Credentials resolved",
        api_key=credentials.masked_api_key(),
        api_key_source=api_key_source,
        base_url=base_url or "https://api.anthropic.com",
        base_url_source=base_url_source,
    )
    return credentials
