"""Tool dispatcher and the execution bridge used by the session loop.

Provides:
- ToolDispatcher: registers tools, dispatches calls, filters by allow/deny lists
- ToolBridge: runs one call under a timeout and turns every failure into an
  error outcome, then derives the follow-along hints (file path, edit line)
- extract_subject_path / extract_edit_line_hint: the hint heuristics
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from conduit.api.models import ToolSchema

logger = logging.getLogger(__name__)

SUBJECT_PATH_KEYS = ("file_path", "path", "filePath", "source", "destination")
WRITE_TOOLS = frozenset({"write_file", "create_file", "Write"})
EDIT_TOOLS = frozenset({"edit_file", "str_replace_editor", "Edit", "edit_block"})
_SEARCH_KEYS = ("old_string", "oldText", "search")
_REPLACE_KEYS = ("new_string", "newText", "replace")
_LINE_KEYS = ("line", "line_number", "lineNumber", "start_line")


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the session loop.

    Each handler is an async callable that accepts **kwargs and returns
    an MCP-format response: {"content": [{"type": "text", "text": "..."}]}.
    A response carrying ``"isError": True`` or a raised exception marks
    the result as an error.

    Workspace-aware handlers additionally receive ``_workspace_dir``: the
    conversation's workspace when set, else the dispatcher default.
    """

    def __init__(self, default_workspace: str | None = None) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._workspace_aware: set[str] = set()
        self._default_workspace = default_workspace

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        *,
        workspace_aware: bool = False,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema
        if workspace_aware:
            self._workspace_aware.add(name)
        else:
            self._workspace_aware.discard(name)

    async def dispatch(
        self,
        name: str,
        args: dict[str, Any],
        workspace_path: str | None = None,
    ) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True

        kwargs = dict(args)
        if name in self._workspace_aware:
            workspace = workspace_path or self._default_workspace
            if workspace:
                kwargs["_workspace_dir"] = workspace
        try:
            result = await handler(**kwargs)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return f"Tool error: {e}", True
        is_error = isinstance(result, dict) and bool(result.get("isError", False))
        return _response_text(result), is_error

    def tool_definitions(self) -> list[ToolSchema]:
        """Return all tool definitions."""
        return [self._definition(name) for name in self._schemas]

    def available_tools(
        self,
        allowed: Sequence[str] | None = None,
        disallowed: Sequence[str] | None = None,
    ) -> list[ToolSchema]:
        """Return tool definitions filtered by the conversation's lists.

        ``allowed=None`` (or containing "*") means every registered tool;
        ``disallowed`` always wins.
        """
        names = list(self._schemas)
        if allowed is not None and "*" not in allowed:
            names = [n for n in names if n in allowed]
        if disallowed:
            names = [n for n in names if n not in disallowed]
        return [self._definition(n) for n in names]

    def _definition(self, name: str) -> ToolSchema:
        schema = self._schemas[name]
        return ToolSchema(
            name=name,
            description=schema.get("description", ""),
            input_schema={k: v for k, v in schema.items() if k != "description"},
        )


def _response_text(result: Any) -> str:
    if not isinstance(result, dict):
        return str(result)
    content = result.get("content") or []
    return "\n".join(
        item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text"
    )


# ---------------------------------------------------------------------------
# Follow-along hints
# ---------------------------------------------------------------------------


def extract_subject_path(args: dict[str, Any]) -> str | None:
    """Return the file path a tool call acts on, regardless of argument naming.

    Keys are tried in a fixed order; the first non-empty string wins.
    """
    for key in SUBJECT_PATH_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_edit_line_hint(
    tool_name: str,
    args: dict[str, Any],
    file_content: str | None = None,
) -> int | None:
    """Approximate 1-based line where an edit landed, or None.

    Full-file writes point at line 1. Edit tools locate the search text,
    then the replacement text, in ``file_content``; without a match,
    explicit line arguments are used.
    """
    if tool_name in WRITE_TOOLS:
        return 1
    if tool_name not in EDIT_TOOLS:
        return None

    if file_content:
        # The file is usually read after the edit ran, so the replacement
        # text is the fallback anchor.
        for keys in (_SEARCH_KEYS, _REPLACE_KEYS):
            needle = next((args[k] for k in keys if args.get(k) is not None), None)
            if isinstance(needle, str) and needle:
                idx = file_content.find(needle)
                if idx >= 0:
                    return file_content.count("\n", 0, idx) + 1

    for key in _LINE_KEYS:
        value = args.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and value > 0:
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


# ---------------------------------------------------------------------------
# ToolBridge
# ---------------------------------------------------------------------------


class ToolExecutor(Protocol):
    async def dispatch(
        self, name: str, args: dict[str, Any], workspace_path: str | None = None
    ) -> tuple[str, bool]: ...


@dataclass
class ToolOutcome:
    content: str
    is_error: bool = False
    file_path: str | None = None
    edit_line_hint: int | None = None


class ToolBridge:
    """Runs tool calls for the session loop. Never raises for tool failures."""

    def __init__(
        self,
        executor: ToolExecutor,
        tool_timeout: float | None = 120.0,
        default_workspace: str | None = None,
    ) -> None:
        self._executor = executor
        self._timeout = tool_timeout
        # Same fallback the executor uses when workspace_path is None
        self._default_workspace = default_workspace

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        workspace_path: str | None = None,
    ) -> ToolOutcome:
        try:
            content, is_error = await asyncio.wait_for(
                self._executor.dispatch(tool_name, args, workspace_path),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", tool_name, self._timeout)
            content, is_error = f"Tool '{tool_name}' timed out after {self._timeout}s", True
        except Exception as e:
            logger.exception("Tool execution error for %s", tool_name)
            content, is_error = f"Tool error: {e}", True

        file_path = extract_subject_path(args)
        edit_line = await self._line_hint(tool_name, args, file_path, workspace_path)
        return ToolOutcome(content=content, is_error=is_error, file_path=file_path, edit_line_hint=edit_line)

    async def _line_hint(
        self,
        tool_name: str,
        args: dict[str, Any],
        file_path: str | None,
        workspace_path: str | None,
    ) -> int | None:
        if not file_path:
            return None
        file_content: str | None = None
        if tool_name in EDIT_TOOLS:
            target = Path(file_path)
            workspace = workspace_path or self._default_workspace
            if not target.is_absolute() and workspace:
                target = Path(workspace) / target
            try:
                file_content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
            except OSError:
                file_content = None
        try:
            return extract_edit_line_hint(tool_name, args, file_content)
        except Exception:
            logger.debug("Edit line hint failed for %s", tool_name, exc_info=True)
            return None
