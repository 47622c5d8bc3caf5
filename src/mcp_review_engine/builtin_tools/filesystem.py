"""Read-only filesystem access for code and configuration files."""

from __future__ import annotations

import asyncio
import fnmatch
import os
from collections import Counter
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mcp_review_engine.config_schema import DEFAULT_ALLOWED_EXTENSIONS
from mcp_review_engine.models import ToolResult
from mcp_review_engine.registry import Tool

FILESYSTEM_OPERATIONS: list[str] = [
    "read_file",
    "list_directory",
    "find_files",
    "analyze_structure",
    "get_file_info",
]
DEFAULT_MAX_FILE_SIZE = 1024 * 1024


def _iso_mtime(stat: os.stat_result) -> str:
    return datetime.fromtimestamp(stat.st_mtime, UTC).isoformat()


def _path_info(path: Path) -> dict[str, Any]:
    try:
        stat = path.stat()
    except OSError:
        return {"name": path.name, "path": str(path), "error": "Failed to read attributes"}
    return {
        "name": path.name,
        "path": str(path),
        "type": "directory" if path.is_dir() else "file",
        "size": stat.st_size,
        "modified": _iso_mtime(stat),
    }


def _walk(
    root: Path,
    max_depth: int,
    include_hidden: bool,
) -> Iterator[tuple[Path, list[str], list[str]]]:
    """os.walk limited to ``max_depth`` levels below ``root`` (root is depth 0)."""
    base_depth = len(root.parts)
    for current, dirs, files in os.walk(root):
        current_path = Path(current)
        depth = len(current_path.parts) - base_depth
        if not include_hidden:
            dirs[:] = [name for name in dirs if not name.startswith(".")]
            files = [name for name in files if not name.startswith(".")]
        if depth >= max_depth:
            dirs[:] = []
        yield current_path, sorted(dirs), sorted(files)


class FileSystemTool(Tool):
    """Filesystem reads confined to ``root`` (when set) and to allowed file types."""

    name = "filesystem"
    description = (
        "Read files, list directories, and analyze file structures. Limited to "
        "code and configuration files under the configured size limit."
    )
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "operation": {
                "type": "string",
                "description": "Filesystem operation to perform",
                "enum": FILESYSTEM_OPERATIONS,
            },
            "path": {"type": "string", "description": "File or directory path"},
            "parameters": {
                "type": "object",
                "description": "Operation-specific parameters",
                "properties": {
                    "pattern": {"type": "string", "description": "File pattern to match"},
                    "recursive": {"type": "boolean", "description": "Search recursively"},
                    "max_depth": {"type": "integer", "description": "Maximum directory depth"},
                    "include_hidden": {"type": "boolean", "description": "Include hidden files"},
                },
            },
        },
        "required": ["operation", "path"],
    }

    def __init__(
        self,
        root: str | None = None,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_extensions: list[str] | None = None,
    ) -> None:
        self.root = Path(root).resolve() if root is not None else None
        self.max_file_size = max_file_size
        self.allowed_extensions = tuple(
            ext.lower() for ext in (allowed_extensions or DEFAULT_ALLOWED_EXTENSIONS)
        )

    async def invoke(self, parameters: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._dispatch, parameters)

    def _dispatch(self, parameters: dict[str, Any]) -> ToolResult:
        operation = parameters["operation"]
        options: dict[str, Any] = parameters.get("parameters") or {}
        try:
            path = self._resolve(parameters["path"])
        except ValueError as exc:
            return ToolResult.failure(str(exc))

        if operation == "read_file":
            return self._read_file(path)
        if operation == "list_directory":
            return self._list_directory(path, options)
        if operation == "find_files":
            return self._find_files(path, options)
        if operation == "analyze_structure":
            return self._analyze_structure(path, options)
        if operation == "get_file_info":
            return self._file_info(path)
        return ToolResult.failure(f"Unknown operation: {operation}")

    def _resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if self.root is None:
            return path.resolve()
        resolved = (path if path.is_absolute() else self.root / path).resolve()
        if not resolved.is_relative_to(self.root):
            raise ValueError(f"Path is outside the allowed root: {raw_path}")
        return resolved

    def is_allowed_file(self, path: Path) -> bool:
        if not path.is_file():
            return False
        try:
            if path.stat().st_size > self.max_file_size:
                return False
        except OSError:
            return False
        return path.name.lower().endswith(self.allowed_extensions)

    def _read_file(self, path: Path) -> ToolResult:
        if not self.is_allowed_file(path):
            return ToolResult.failure(f"File type not allowed or file too large: {path}")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.failure(f"Failed to read file: {exc}")
        return ToolResult.ok(
            content,
            mime_type="text/plain",
            metadata={
                "file": str(path),
                "size": len(content),
                "lines": len(content.splitlines()),
                "encoding": "UTF-8",
            },
        )

    def _list_directory(self, path: Path, options: dict[str, Any]) -> ToolResult:
        if not path.is_dir():
            return ToolResult.failure(f"Path is not a directory: {path}")
        include_hidden = bool(options.get("include_hidden", False))
        entries = [
            _path_info(child)
            for child in sorted(path.iterdir())
            if include_hidden or not child.name.startswith(".")
        ]
        return ToolResult.ok(
            entries,
            metadata={
                "directory": str(path),
                "file_count": len(entries),
                "include_hidden": include_hidden,
            },
        )

    def _find_files(self, path: Path, options: dict[str, Any]) -> ToolResult:
        if not path.is_dir():
            return ToolResult.failure(f"Path is not a directory: {path}")
        pattern = str(options.get("pattern") or "*")
        recursive = bool(options.get("recursive", True))
        max_depth = int(options.get("max_depth", 10)) if recursive else 0
        include_hidden = bool(options.get("include_hidden", False))

        found: list[dict[str, Any]] = []
        for current, _, files in _walk(path, max_depth, include_hidden):
            for name in files:
                candidate = current / name
                if fnmatch.fnmatch(name, pattern) and self.is_allowed_file(candidate):
                    found.append(_path_info(candidate))
        return ToolResult.ok(
            found,
            metadata={
                "root_path": str(path),
                "pattern": pattern,
                "found_files": len(found),
                "recursive": recursive,
            },
        )

    def _analyze_structure(self, path: Path, options: dict[str, Any]) -> ToolResult:
        if not path.is_dir():
            return ToolResult.failure(f"Path is not a directory: {path}")
        max_depth = int(options.get("max_depth", 5))
        include_hidden = bool(options.get("include_hidden", False))

        extension_counts: Counter[str] = Counter()
        total_files = 0
        total_dirs = 0
        total_size = 0
        for current, _, files in _walk(path, max_depth, include_hidden):
            total_dirs += 1
            for name in files:
                total_files += 1
                try:
                    total_size += (current / name).stat().st_size
                except OSError:
                    continue
                suffix = Path(name).suffix.lower()
                if suffix:
                    extension_counts[suffix] += 1

        structure = {
            "total_files": total_files,
            "total_directories": total_dirs,
            "total_size_bytes": total_size,
            "extension_counts": dict(extension_counts.most_common()),
        }
        return ToolResult.ok(
            structure,
            metadata={"root_path": str(path), "max_depth": max_depth},
        )

    def _file_info(self, path: Path) -> ToolResult:
        try:
            stat = path.stat()
        except OSError as exc:
            return ToolResult.failure(f"Failed to get file info: {exc}")
        return ToolResult.ok({
            "path": str(path),
            "size": stat.st_size,
            "is_directory": path.is_dir(),
            "is_regular_file": path.is_file(),
            "modified_time": _iso_mtime(stat),
            "readable": os.access(path, os.R_OK),
            "writable": os.access(path, os.W_OK),
            "executable": os.access(path, os.X_OK),
        })
