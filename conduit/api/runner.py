"""Streaming session controller -- one user turn, streamed, with tool loops.

Drives a vendor adapter over direct httpx streaming calls, normalizes the
vendor stream into the wire event protocol, runs requested tools through
the ToolBridge and feeds results back until the model stops asking for
tools or the iteration bound is reached. The finished assistant text is
persisted by a detached task once the stream is complete.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from collections.abc import AsyncGenerator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from conduit.api.compaction import HistoryLoader, options_from_settings
from conduit.api.models import (
    CompactionResult,
    Conversation,
    Message,
    StreamEvent,
    TextBlock,
    ToolCall,
    ToolResultBlock,
    ToolSchema,
    ToolUseBlock,
    TurnInput,
    UsageTotals,
)
from conduit.api.tools import ToolBridge, ToolOutcome
from conduit.api.usage import UsageAccountant
from conduit.config import Settings
from conduit.providers import Credentials, create_adapter
from conduit.providers.base import (
    EngineError,
    ProviderAdapter,
    TextFragment,
    ToolCallFragment,
    UsageSnapshot,
    VendorError,
    redact_secrets,
)

logger = logging.getLogger(__name__)


class SessionPhase(enum.Enum):
    INIT = "init"
    REQUEST_SENT = "request_sent"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZED = "finalized"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    ERRORED = "errored"


@dataclass
class SessionState:
    """Everything one session owns. Never shared between sessions."""

    conversation: Conversation
    message_id: str
    history: list[Message] = field(default_factory=list)
    # The user message followed by this session's tool exchanges
    turn: list[Message] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.INIT
    iteration: int = 0
    full_text: str = ""
    iteration_text: str = ""
    pending_calls: list[ToolCall] = field(default_factory=list)
    usage: UsageAccountant = field(default_factory=UsageAccountant)
    stop_reason: str = "end_turn"
    compaction: CompactionResult | None = None


# ------------------------------------------------------------------
# Wire events
# ------------------------------------------------------------------


def message_start_event(message_id: str, model: str) -> StreamEvent:
    return StreamEvent("message_start", {"message": {"id": message_id, "role": "assistant", "model": model}})


def content_block_start_event() -> StreamEvent:
    return StreamEvent("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}})


def text_delta_event(text: str) -> StreamEvent:
    return StreamEvent("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": text}})


def tool_result_event(call: ToolCall, outcome: ToolOutcome) -> StreamEvent:
    data: dict[str, Any] = {"toolCallId": call.id, "toolName": call.name}
    if outcome.file_path is not None:
        data["filePath"] = outcome.file_path
    if outcome.edit_line_hint is not None:
        data["editLineHint"] = outcome.edit_line_hint
    data["result"] = outcome.content
    data["isError"] = outcome.is_error
    return StreamEvent("tool_result", data)


def compaction_info_event(result: CompactionResult) -> StreamEvent:
    return StreamEvent(
        "compaction_info",
        {
            "original_count": result.original_count,
            "compacted_count": result.compacted_count,
            "tokens_removed": result.tokens_removed,
            "summary": result.summary,
        },
    )


def content_block_stop_event() -> StreamEvent:
    return StreamEvent("content_block_stop", {"index": 0})


def message_delta_event(stop_reason: str, usage: UsageTotals) -> StreamEvent:
    return StreamEvent(
        "message_delta",
        {
            "delta": {"stop_reason": stop_reason},
            "usage": {"input_tokens": usage.input_tokens, "output_tokens": usage.output_tokens},
        },
    )


def message_stop_event() -> StreamEvent:
    return StreamEvent("message_stop")


def error_event(error_type: str, message: str) -> StreamEvent:
    return StreamEvent("error", {"error": {"type": error_type, "message": message}})


# ------------------------------------------------------------------
# Tool call assembly
# ------------------------------------------------------------------


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallBuffer:
    """Assembles tool-call fragments by index until the stream ends.

    Argument text deltas are concatenated and parsed once at the end;
    vendors that send complete argument objects replace the buffer.
    """

    def __init__(self) -> None:
        self._entries: dict[int, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, fragment: ToolCallFragment) -> None:
        entry = self._entries.setdefault(fragment.index, {"id": None, "name": "", "parts": [], "arguments": None})
        if fragment.id:
            entry["id"] = fragment.id
        if fragment.name:
            entry["name"] = fragment.name
        if isinstance(fragment.arguments, dict):
            entry["arguments"] = fragment.arguments
        elif fragment.arguments:
            entry["parts"].append(fragment.arguments)

    def finalize(self) -> list[ToolCall]:
        """Return calls in request order, each with a correlation id."""
        calls: list[ToolCall] = []
        for index in sorted(self._entries):
            entry = self._entries[index]
            arguments = entry["arguments"]
            if arguments is None:
                arguments = self._parse_arguments(entry["name"], "".join(entry["parts"]))
            calls.append(ToolCall(id=entry["id"] or new_call_id(), name=entry["name"], arguments=arguments))
        return calls

    @staticmethod
    def _parse_arguments(name: str, raw: str) -> dict[str, Any]:
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON arguments for tool %s: %.200s", name, raw)
            return {}
        return parsed if isinstance(parsed, dict) else {}


# ------------------------------------------------------------------
# Collaborators
# ------------------------------------------------------------------


class ToolCatalog(Protocol):
    def available_tools(
        self,
        allowed: Sequence[str] | None = None,
        disallowed: Sequence[str] | None = None,
    ) -> list[ToolSchema]: ...


class TurnStore(Protocol):
    async def record_assistant_turn(
        self, conversation_id: str, text: str, model: str, input_tokens: int, output_tokens: int
    ) -> str: ...


# ------------------------------------------------------------------
# SessionRunner
# ------------------------------------------------------------------


class SessionRunner:
    """Runs streaming sessions.

    Owns the shared httpx client and the set of detached persistence
    tasks. Everything per-session lives on a SessionState.
    """

    def __init__(
        self,
        settings: Settings,
        store: TurnStore,
        loader: HistoryLoader,
        tools: ToolCatalog,
        bridge: ToolBridge,
        credentials: Credentials,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._loader = loader
        self._tools = tools
        self._bridge = bridge
        self._credentials = credentials
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._background: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Initialize the httpx client. SSE is long-lived: no read timeout by default."""
        timeout = httpx.Timeout(
            connect=self._settings.api_timeout_connect,
            read=self._settings.stream_read_timeout,
            write=30.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=50, max_keepalive_connections=10)
        self._http = httpx.AsyncClient(timeout=timeout, limits=limits, transport=self._transport)
        logger.info("httpx client initialized (max_iterations=%d)", self._settings.max_iterations)

    async def close(self) -> None:
        """Wait for pending persistence, then close the httpx client."""
        await self.drain()
        if self._http:
            await self._http.aclose()
            self._http = None

    async def drain(self) -> None:
        """Wait for detached persistence tasks to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def stream_session(
        self,
        conversation: Conversation,
        turn: TurnInput,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream one session. The last event is always message_stop."""
        try:
            adapter = await create_adapter(conversation.model, self._credentials, self._settings)
        except EngineError as e:
            logger.warning("Session not started for conversation %s: %s", conversation.id, e)
            yield error_event(e.error_type, str(e))
            yield message_stop_event()
            return

        state = SessionState(conversation=conversation, message_id=f"msg_{uuid.uuid4().hex[:24]}")
        state.compaction = await self._load_history(conversation, turn)
        state.history = list(state.compaction.messages)
        state.turn = [turn.to_message()]
        tools = self._session_tools(adapter, conversation)

        yield message_start_event(state.message_id, conversation.model)
        if state.compaction.compacted:
            yield compaction_info_event(state.compaction)
        yield content_block_start_event()

        try:
            while True:
                state.iteration += 1
                async with aclosing(self._stream_iteration(state, adapter, tools)) as events:
                    async for event in events:
                        yield event

                if not state.pending_calls:
                    state.stop_reason = "end_turn"
                    break

                async with aclosing(self._execute_tools(state)) as events:
                    async for event in events:
                        yield event

                if state.iteration >= self._settings.max_iterations:
                    logger.warning(
                        "Tool loop reached max_iterations=%d for conversation %s",
                        self._settings.max_iterations,
                        conversation.id,
                    )
                    state.stop_reason = "max_iterations"
                    break
        except EngineError as e:
            state.phase = SessionPhase.ERRORED
            message = redact_secrets(str(e), adapter.secrets())
            logger.error("Session %s failed: %s", state.message_id, message)
            yield error_event(e.error_type, message)
            yield message_stop_event()
            return
        except httpx.HTTPError as e:
            state.phase = SessionPhase.ERRORED
            message = redact_secrets(f"{adapter.vendor} request failed: {e}", adapter.secrets())
            logger.error("Session %s failed: %s", state.message_id, message)
            yield error_event(VendorError.error_type, message)
            yield message_stop_event()
            return
        except Exception as e:
            state.phase = SessionPhase.ERRORED
            message = redact_secrets(f"{adapter.vendor} stream failed: {e}", adapter.secrets())
            logger.exception("Session %s failed unexpectedly", state.message_id)
            yield error_event(VendorError.error_type, message)
            yield message_stop_event()
            return

        state.phase = SessionPhase.FINALIZED
        totals = state.usage.totals
        logger.info(
            "Session %s finished: stop_reason=%s iterations=%d tokens=%d/%d",
            state.message_id,
            state.stop_reason,
            state.iteration,
            totals.input_tokens,
            totals.output_tokens,
        )
        yield content_block_stop_event()
        yield message_delta_event(state.stop_reason, totals)
        self._schedule_persist(state)
        yield message_stop_event()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _load_history(self, conversation: Conversation, turn: TurnInput) -> CompactionResult:
        options = options_from_settings(conversation.model, self._settings)
        exclude = [turn.message_id] if turn.message_id else []
        try:
            return await self._loader.load(conversation.id, options, exclude_ids=exclude)
        except Exception:
            # Continue with an empty history rather than failing the turn
            logger.exception("Failed to load history for conversation %s", conversation.id)
            return CompactionResult(messages=[])

    def _session_tools(self, adapter: ProviderAdapter, conversation: Conversation) -> list[ToolSchema]:
        if not adapter.supports_tools():
            return []
        return self._tools.available_tools(conversation.allowed_tools, conversation.disallowed_tools)

    async def _stream_iteration(
        self,
        state: SessionState,
        adapter: ProviderAdapter,
        tools: list[ToolSchema],
    ) -> AsyncGenerator[StreamEvent, None]:
        """One vendor round trip: REQUEST_SENT -> STREAMING -> end of stream."""
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        state.phase = SessionPhase.REQUEST_SENT
        state.iteration_text = ""
        state.pending_calls = []
        state.usage.begin_iteration()
        request = adapter.build_request(state.history, state.conversation.system_prompt, tools, state.turn)
        parser = adapter.parser()
        buffer = ToolCallBuffer()
        text_parts: list[str] = []

        async with self._http.stream(
            request.method, request.url, json=request.body, headers=request.headers
        ) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise VendorError(f"{adapter.vendor} error {response.status_code}: {body[:500]}")

            state.phase = SessionPhase.STREAMING
            async for chunk in response.aiter_bytes():
                for fragment in parser.feed(chunk):
                    if isinstance(fragment, TextFragment):
                        text_parts.append(fragment.text)
                        state.full_text += fragment.text
                        yield text_delta_event(fragment.text)
                    elif isinstance(fragment, ToolCallFragment):
                        buffer.add(fragment)
                    elif isinstance(fragment, UsageSnapshot):
                        state.usage.observe(fragment)

        for fragment in parser.close():
            if isinstance(fragment, TextFragment):
                text_parts.append(fragment.text)
                state.full_text += fragment.text
                yield text_delta_event(fragment.text)
            elif isinstance(fragment, ToolCallFragment):
                buffer.add(fragment)
            elif isinstance(fragment, UsageSnapshot):
                state.usage.observe(fragment)

        if parser.skipped:
            logger.debug("Skipped %d unparseable %s frames", parser.skipped, adapter.vendor)
        state.usage.commit_iteration()
        state.iteration_text = "".join(text_parts)
        state.pending_calls = buffer.finalize()
        if state.pending_calls:
            state.phase = SessionPhase.TOOLS_PENDING

    async def _execute_tools(self, state: SessionState) -> AsyncGenerator[StreamEvent, None]:
        """EXECUTING_TOOLS: run the batch, emit results in request order."""
        calls = state.pending_calls
        content: list[Any] = []
        if state.iteration_text:
            content.append(TextBlock(text=state.iteration_text))
        content.extend(ToolUseBlock(id=c.id, name=c.name, arguments=c.arguments) for c in calls)
        state.turn.append(Message(role="assistant", content=content))

        state.phase = SessionPhase.EXECUTING_TOOLS
        workspace = state.conversation.workspace_path
        tasks: list[asyncio.Task] = []
        if self._settings.parallel_tools and len(calls) > 1:
            tasks = [
                asyncio.create_task(self._bridge.execute(c.name, c.arguments, workspace))
                for c in calls
            ]

        results: list[ToolResultBlock] = []
        try:
            for i, call in enumerate(calls):
                if tasks:
                    outcome = await tasks[i]
                else:
                    outcome = await self._bridge.execute(call.name, call.arguments, workspace)
                if outcome.is_error:
                    logger.info("Tool %s returned an error: %.200s", call.name, outcome.content)
                results.append(ToolResultBlock(tool_use_id=call.id, content=outcome.content, is_error=outcome.is_error))
                yield tool_result_event(call, outcome)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        state.turn.append(Message(role="tool", content=list(results)))
        state.pending_calls = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _schedule_persist(self, state: SessionState) -> None:
        task = asyncio.create_task(self._persist(state))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, state: SessionState) -> None:
        totals = state.usage.totals
        try:
            await self._store.record_assistant_turn(
                state.conversation.id,
                state.full_text,
                state.conversation.model,
                totals.input_tokens,
                totals.output_tokens,
            )
        except Exception:
            state.phase = SessionPhase.PERSIST_FAILED
            logger.exception(
                "persistence_error: failed to save assistant turn for conversation %s",
                state.conversation.id,
            )
            return
        state.phase = SessionPhase.PERSISTED
