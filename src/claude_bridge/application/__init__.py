"""Application layer."""

from claude_bridge.application.history import (
    SessionFileNotFoundError,
    SessionHistoryReader,
)

__all__ = [
    "SessionFileNotFoundError",
    "SessionHistoryReader",
]
