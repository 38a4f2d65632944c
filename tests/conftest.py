"""Test fixtures: SQLite (aiosqlite) storage and scripted vendor streams.

Vendor HTTP traffic never leaves the process: the session runner's httpx
client is built on an httpx.MockTransport that replays canned SSE/NDJSON
bodies, optionally split into small chunks to exercise stream framing.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import pytest
import pytest_asyncio

from conduit.config import Settings
from conduit.storage.database import Database
from conduit.storage.store import ConversationStore, SettingsStore

ANTHROPIC_TEST_KEY = "sk-ant-test-key-0001"


# ---------------------------------------------------------------------------
# Vendor stream builders
# ---------------------------------------------------------------------------


def sse(*frames: dict[str, Any], event_lines: bool = False) -> bytes:
    """Encode frames as an SSE body (``data: {json}`` + blank line)."""
    out = []
    for frame in frames:
        if event_lines and "type" in frame:
            out.append(f"event: {frame['type']}\n")
        out.append(f"data: {json.dumps(frame)}\n\n")
    return "".join(out).encode("utf-8")


def ndjson(*frames: dict[str, Any]) -> bytes:
    return "".join(json.dumps(f) + "\n" for f in frames).encode("utf-8")


def anthropic_stream(
    *texts: str,
    tool_calls: list[tuple[str, str, dict[str, Any]]] | None = None,
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> bytes:
    """A Messages API stream: text deltas at index 0, then tool_use blocks.

    Tool arguments are streamed as two input_json_delta fragments.
    """
    frames: list[dict[str, Any]] = [
        {
            "type": "message_start",
            "message": {"id": "msg_vendor", "role": "assistant", "usage": {"input_tokens": input_tokens, "output_tokens": 1}},
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    for text in texts:
        frames.append({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})
    frames.append({"type": "ping"})
    frames.append({"type": "content_block_stop", "index": 0})

    stop_reason = "end_turn"
    for offset, (call_id, name, args) in enumerate(tool_calls or [], start=1):
        stop_reason = "tool_use"
        raw = json.dumps(args)
        half = len(raw) // 2
        frames.append({
            "type": "content_block_start",
            "index": offset,
            "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
        })
        for part in (raw[:half], raw[half:]):
            frames.append({
                "type": "content_block_delta",
                "index": offset,
                "delta": {"type": "input_json_delta", "partial_json": part},
            })
        frames.append({"type": "content_block_stop", "index": offset})

    frames.append({
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason},
        "usage": {"output_tokens": output_tokens},
    })
    frames.append({"type": "message_stop"})
    return sse(*frames, event_lines=True)


def openai_stream(*texts: str, prompt_tokens: int = 8, completion_tokens: int = 4) -> bytes:
    frames: list[dict[str, Any]] = [
        {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]},
    ]
    for text in texts:
        frames.append({"choices": [{"index": 0, "delta": {"content": text}}]})
    frames.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
    frames.append({"choices": [], "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens}})
    return sse(*frames) + b"data: [DONE]\n\n"


def gemini_stream(*parts: dict[str, Any], prompt_tokens: int = 6, candidate_tokens: int = 3) -> bytes:
    """Each part becomes one chunk; usageMetadata is repeated cumulatively."""
    frames = []
    for i, part in enumerate(parts, start=1):
        frames.append({
            "candidates": [{"content": {"role": "model", "parts": [part]}}],
            "usageMetadata": {"promptTokenCount": prompt_tokens, "candidatesTokenCount": min(i, candidate_tokens)},
        })
    frames.append({
        "candidates": [{"content": {"role": "model", "parts": []}, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": prompt_tokens, "candidatesTokenCount": candidate_tokens},
    })
    return sse(*frames)


# ---------------------------------------------------------------------------
# Scripted vendor transport
# ---------------------------------------------------------------------------


async def _chunks(body: bytes, size: int) -> AsyncIterator[bytes]:
    for i in range(0, len(body), size):
        yield body[i : i + size]


@dataclass
class Reply:
    """One canned vendor response. ``chunk_size`` splits the body."""

    body: bytes
    status: int = 200
    chunk_size: int | None = None

    def to_response(self) -> httpx.Response:
        if self.chunk_size:
            return httpx.Response(self.status, content=_chunks(self.body, self.chunk_size))
        return httpx.Response(self.status, content=self.body)


class ScriptedVendor:
    """httpx.MockTransport handler replaying replies in order.

    The last reply repeats once the script runs out. Exceptions in the
    script are raised instead of answering.
    """

    def __init__(self, *replies: Reply | bytes | Exception) -> None:
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.replies)) - 1
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, bytes):
            reply = Reply(reply)
        return reply.to_response()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


# ---------------------------------------------------------------------------
# Settings and database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Function-scoped settings on a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'conduit.db'}",
        workspace_dir=str(tmp_path / "workspace"),
        anthropic_api_key="",
        openai_api_key="",
        google_api_key="",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def settings_store(db) -> SettingsStore:
    return SettingsStore(db)


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir(exist_ok=True)
    return path
