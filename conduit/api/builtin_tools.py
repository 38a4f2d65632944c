"""Built-in workspace tools: read_file, write_file, edit_file, bash.

All file tools are confined to the conversation's workspace directory.
Handlers return MCP-format responses; invalid input raises, which the
dispatcher turns into an error result.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from conduit.api.tools import ToolDispatcher

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _mcp_response(text: str, is_error: bool = False) -> dict[str, Any]:
    response: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        response["isError"] = True
    return response


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve ``path_str`` and check it stays under workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(f"Path '{path_str}' is outside workspace '{workspace_dir}'")
    return target


def _read_text(target: Path, path_str: str) -> str:
    if not target.is_file():
        raise FileNotFoundError(f"File not found: {path_str}")
    size = target.stat().st_size
    if size > _MAX_FILE_SIZE:
        raise ValueError(f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)")
    return target.read_text(encoding="utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(
    path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    _workspace_dir: str,
) -> dict[str, Any]:
    """Read a file, optionally a line window (offset 0-indexed, limit 0 = all)."""
    target = _validate_path(path, _workspace_dir)
    content = await asyncio.to_thread(_read_text, target, path)

    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return _mcp_response(content if content else "(empty file)")


async def write_file_tool(
    path: str,
    content: str,
    *,
    _workspace_dir: str,
) -> dict[str, Any]:
    target = _validate_path(path, _workspace_dir)
    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return _mcp_response(f"File written: {path} ({len(content):,} bytes)")


async def edit_file_tool(
    path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
    *,
    _workspace_dir: str,
) -> dict[str, Any]:
    """Replace ``old_string`` with ``new_string``.

    ``old_string`` must occur exactly once unless ``replace_all`` is set.
    """
    if not old_string:
        raise ValueError("old_string must not be empty")
    target = _validate_path(path, _workspace_dir)
    original = await asyncio.to_thread(_read_text, target, path)

    occurrences = original.count(old_string)
    if occurrences == 0:
        raise ValueError(f"old_string not found in {path}")
    if occurrences > 1 and not replace_all:
        raise ValueError(
            f"old_string occurs {occurrences} times in {path}; "
            "add surrounding context or set replace_all"
        )

    updated = original.replace(old_string, new_string, -1 if replace_all else 1)
    await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
    replaced = occurrences if replace_all else 1
    return _mcp_response(f"Edited {path}: {replaced} replacement(s)")


async def bash_tool(
    command: str,
    timeout: int = 30,
    *,
    _workspace_dir: str,
) -> dict[str, Any]:
    """Run a shell command in the workspace; non-zero exit is an error result."""
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(_workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return _mcp_response(f"Command timed out after {effective_timeout}s: {command}", is_error=True)
    except asyncio.CancelledError:
        proc.kill()
        # Reap the child even though this task is being cancelled
        try:
            await asyncio.shield(asyncio.wait_for(proc.wait(), timeout=5))
        except asyncio.TimeoutError:
            logger.warning("bash child %s not reaped after kill", proc.pid)
        raise

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 100KB]"

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    return _mcp_response("\n".join(parts) if parts else "(no output)", is_error=proc.returncode != 0)


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "offset": {
            "type": "integer",
            "description": "Line offset to start reading from (0-indexed)",
            "default": 0,
            "minimum": 0,
        },
        "limit": {
            "type": "integer",
            "description": "Number of lines to read (0 = all)",
            "default": 0,
            "minimum": 0,
        },
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Create or overwrite a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Full file content"},
    },
    "required": ["path", "content"],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Replace an exact string in a workspace file",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "old_string": {"type": "string", "description": "Exact text to replace; must be unique unless replace_all"},
        "new_string": {"type": "string", "description": "Replacement text"},
        "replace_all": {"type": "boolean", "description": "Replace every occurrence", "default": False},
    },
    "required": ["path", "old_string", "new_string"],
}

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": _MAX_BASH_TIMEOUT,
        },
    },
    "required": ["command"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, *, enable_bash: bool = True) -> None:
    """Register the built-in tools. The dispatcher injects the workspace per call."""
    dispatcher.register("read_file", read_file_tool, _READ_FILE_SCHEMA, workspace_aware=True)
    dispatcher.register("write_file", write_file_tool, _WRITE_FILE_SCHEMA, workspace_aware=True)
    dispatcher.register("edit_file", edit_file_tool, _EDIT_FILE_SCHEMA, workspace_aware=True)
    if enable_bash:
        dispatcher.register("bash", bash_tool, _BASH_SCHEMA, workspace_aware=True)
