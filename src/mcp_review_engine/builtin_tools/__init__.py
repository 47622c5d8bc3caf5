"""Built-in review tools: git, database, filesystem, notification."""

from __future__ import annotations

from mcp_review_engine.builtin_tools.database import DatabaseTool
from mcp_review_engine.builtin_tools.filesystem import FileSystemTool
from mcp_review_engine.builtin_tools.git import GitTool
from mcp_review_engine.builtin_tools.notification import NotificationTool
from mcp_review_engine.config_schema import EngineConfig
from mcp_review_engine.registry import ToolRegistry

__all__ = [
    "DatabaseTool",
    "FileSystemTool",
    "GitTool",
    "NotificationTool",
    "build_default_registry",
]


def build_default_registry(config: EngineConfig) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(GitTool())
    registry.register(DatabaseTool(config.review_db_path))
    registry.register(
        FileSystemTool(
            config.filesystem_root,
            max_file_size=config.max_file_size,
            allowed_extensions=config.allowed_extensions,
        )
    )
    registry.register(NotificationTool(config.notification_webhooks))
    return registry
