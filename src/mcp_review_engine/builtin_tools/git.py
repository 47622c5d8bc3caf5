"""Git repository inspection tool."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from unidiff import PatchSet

from mcp_review_engine.models import ToolResult
from mcp_review_engine.registry import Tool

GIT_COMMANDS: list[str] = ["diff", "log", "show", "status", "blame", "file-content"]
LOG_MAX_COUNT = 50


async def run_git(repository: str, *args: str) -> tuple[int, str, str]:
    """Run ``git -C <repository> <args>``; returns (returncode, stdout, stderr)."""
    proc = await asyncio.create_subprocess_exec(
        "git", "-C", repository, *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
    )


def extract_affected_files(diff_text: str) -> list[dict[str, str | int]]:
    """Parse a unified diff into per-file entries.

    Each entry contains: path, operation (create/delete/modify), added, removed.
    Returns [] on parse failure.
    """
    try:
        patch = PatchSet(diff_text)
    except Exception:
        return []

    files: list[dict[str, str | int]] = []
    for patched_file in patch:
        if patched_file.is_added_file:
            operation = "create"
        elif patched_file.is_removed_file:
            operation = "delete"
        else:
            operation = "modify"
        files.append({
            "path": patched_file.path,
            "operation": operation,
            "added": patched_file.added,
            "removed": patched_file.removed,
        })
    return files


class GitTool(Tool):
    name = "git"
    description = (
        "Execute Git commands and analyze repository data. Can get diffs, file "
        "contents, commit history, and branch information."
    )
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Git command to execute",
                "enum": GIT_COMMANDS,
            },
            "repository": {"type": "string", "description": "Repository path"},
            "parameters": {
                "type": "object",
                "description": "Command-specific parameters",
                "properties": {
                    "file": {"type": "string", "description": "File path"},
                    "commit": {"type": "string", "description": "Commit hash"},
                    "branch": {"type": "string", "description": "Branch name"},
                    "since": {"type": "string", "description": "Date since"},
                    "author": {"type": "string", "description": "Author filter"},
                },
            },
        },
        "required": ["command", "repository"],
    }

    async def invoke(self, parameters: dict[str, Any]) -> ToolResult:
        command = parameters["command"]
        repository = parameters["repository"]
        options: dict[str, Any] = parameters.get("parameters") or {}

        if command == "file-content":
            return self._file_content(repository, options)

        args = self._build_args(command, options)
        if isinstance(args, ToolResult):
            return args
        returncode, stdout, stderr = await run_git(repository, *args)
        metadata: dict[str, Any] = {"command": command, "repository": repository}
        if returncode != 0:
            return ToolResult.failure(
                stderr or f"git {command} exited with {returncode}",
                metadata={**metadata, "returncode": returncode},
            )

        if command == "diff":
            affected = extract_affected_files(stdout)
            metadata["lines"] = len(stdout.splitlines())
            metadata["affected_files"] = affected
            return ToolResult.ok(stdout, mime_type="text/x-diff", metadata=metadata)
        if command == "log":
            commits = stdout.splitlines()
            metadata["commit_count"] = len(commits)
            return ToolResult.ok(commits, metadata=metadata)
        if command == "status":
            changed = stdout.splitlines()
            metadata["changed_files"] = len(changed)
            return ToolResult.ok(changed, metadata=metadata)
        if command == "show":
            metadata["commit"] = options["commit"]
        elif command == "blame":
            metadata["file"] = options["file"]
        return ToolResult.ok(stdout, mime_type="text/plain", metadata=metadata)

    def _build_args(self, command: str, options: dict[str, Any]) -> list[str] | ToolResult:
        if command == "diff":
            args = ["diff"]
            if options.get("commit"):
                args.append(str(options["commit"]))
            elif options.get("branch"):
                args.append(str(options["branch"]))
            if options.get("file"):
                args.extend(["--", str(options["file"])])
            return args
        if command == "log":
            args = ["log", "--oneline", f"--max-count={LOG_MAX_COUNT}"]
            if options.get("author"):
                args.append(f"--author={options['author']}")
            if options.get("since"):
                args.append(f"--since={options['since']}")
            if options.get("branch"):
                args.append(str(options["branch"]))
            if options.get("file"):
                args.extend(["--", str(options["file"])])
            return args
        if command == "status":
            return ["status", "--porcelain"]
        if command == "show":
            if not options.get("commit"):
                return ToolResult.failure("Commit hash required for git show")
            return ["show", str(options["commit"])]
        if command == "blame":
            if not options.get("file"):
                return ToolResult.failure("File path required for git blame")
            return ["blame", "--", str(options["file"])]
        return ToolResult.failure(f"Unknown git command: {command}")

    def _file_content(self, repository: str, options: dict[str, Any]) -> ToolResult:
        if not options.get("file"):
            return ToolResult.failure("File path required")
        root = Path(repository).resolve()
        target = (root / str(options["file"])).resolve()
        if not target.is_relative_to(root):
            return ToolResult.failure(f"Path escapes repository: {options['file']}")
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return ToolResult.failure(f"Failed to read file: {exc}")
        return ToolResult.ok(
            content,
            mime_type="text/plain",
            metadata={
                "file": options["file"],
                "repository": repository,
                "size": len(content),
                "lines": len(content.splitlines()),
            },
        )
