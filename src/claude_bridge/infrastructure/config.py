"""Configuration management."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# ホスト側が未設定の値を文字列として渡してくる場合がある
_UNSET_MARKERS = frozenset({"", "undefined", "null"})


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 認証情報（settings.json に定義がない場合のフォールバック）
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API Key",
    )
    anthropic_base_url: str | None = Field(
        default=None,
        description="Anthropic API のベースURL",
    )

    # Claude Code のローカル設定
    claude_settings_file: Path = Field(
        default_factory=lambda: Path.home() / ".claude" / "settings.json",
        description="認証情報を優先的に読み込むローカル設定ファイル",
    )
    claude_projects_dir: Path = Field(
        default_factory=lambda: Path.home() / ".claude" / "projects",
        description="セッション履歴（JSONL）の保存先ディレクトリ",
    )

    # ホストIDEから渡されるプロジェクト情報
    idea_project_path: str | None = Field(
        default=None,
        description="IDEが宣言するプロジェクトパス",
    )
    project_path: str | None = Field(
        default=None,
        description="プロジェクトパス（IDEA_PROJECT_PATH の代替）",
    )
    tmpdir: str | None = Field(
        default=None,
        description="一時ディレクトリの上書き設定",
    )

    # パーミッション通信設定
    claude_permission_dir: Path | None = Field(
        default=None,
        description="パーミッション要求/応答ファイルのディレクトリ",
    )
    permission_timeout: float = Field(
        default=30.0,
        gt=0,
        description="パーミッション応答の待機上限（秒）",
    )
    permission_poll_interval: float = Field(
        default=0.1,
        gt=0,
        description="応答ファイルのポーリング間隔（秒）",
    )

    # エージェント呼び出し設定
    claude_use_stdin: bool = Field(
        default=False,
        description="send コマンドの引数を標準入力のJSONから読み込む",
    )
    claude_model: str = Field(
        default="sonnet",
        description="エージェント呼び出しに使用するモデル",
    )
    claude_max_turns: int = Field(
        default=100,
        gt=0,
        description="1回の呼び出しで許可するターン数",
    )
    query_timeout: float = Field(
        default=60.0,
        gt=0,
        description="最初のイベント受信までの待機上限（秒）",
    )

    # ロギング設定
    bridge_debug: bool = Field(
        default=False,
        description="標準出力に [DEBUG] 行を出力する",
    )
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: Path = Field(
        default_factory=lambda: Path.home() / ".claude-bridge" / "logs",
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(default=7, description="ログの保持日数")

    @field_validator("idea_project_path", "project_path", "tmpdir", mode="before")
    @classmethod
    def parse_optional_path(cls, v: str | None) -> str | None:
        """未設定を表す文字列（"undefined" など）を None に正規化する."""
        if v is None:
            return None
        if isinstance(v, str):
            stripped = v.strip()
            if stripped in _UNSET_MARKERS:
                return None
            return stripped
        return v

    @field_validator("claude_permission_dir", mode="before")
    @classmethod
    def parse_permission_dir(cls, v: str | Path | None) -> Path | None:
        """claude_permission_dirをPathに変換する."""
        if isinstance(v, str):
            if v.strip() in _UNSET_MARKERS:
                return None
            return Path(v.strip())
        return v

    @property
    def external_project_path(self) -> str | None:
        """外部から宣言されたプロジェクトパス（IDEA_PROJECT_PATH 優先）."""
        return self.idea_project_path or self.project_path

    def permission_dir(self) -> Path:
        """
        パーミッション通信ディレクトリを取得する.

        CLAUDE_PERMISSION_DIR が未設定の場合はシステム一時ディレクトリ配下の
        claude-permission を使用する.

        Returns:
            通信ディレクトリのパス
        """
        if self.claude_permission_dir is not None:
            return self.claude_permission_dir
        return Path(tempfile.gettempdir()) / "claude-permission"

    def additional_directories(self, working_directory: Path) -> list[str]:
        """
        エージェントがアクセス可能な追加ディレクトリを重複なしで返す.

        Args:
            working_directory: 解決済みの作業ディレクトリ

        Returns:
            作業ディレクトリと宣言済みプロジェクトパスのリスト（順序保持）
        """
        candidates = [str(working_directory), self.idea_project_path, self.project_path]
        directories: list[str] = []
        for candidate in candidates:
            if candidate and candidate not in directories:
                directories.append(candidate)
        logger.debug("Additional directories: %s", directories)
        return directories


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
