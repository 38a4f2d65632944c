"""Shared adapter interface, stream fragments and framing buffers.

Every vendor adapter translates between the internal message/tool model
(conduit.api.models) and one vendor's request/response wire format.
Vendor JSON shapes never leave the adapter: parsers only yield the three
fragment types defined here.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from conduit.api.models import Message, ToolSchema, ToolUseBlock

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


class EngineError(Exception):
    """Base for errors that abort a session. ``error_type`` goes on the wire."""

    error_type: ClassVar[str] = "engine_error"


class AuthError(EngineError):
    """No credential resolvable for the vendor."""

    error_type = "auth_error"


class VendorError(EngineError):
    """Non-2xx response, in-stream error frame, or unknown vendor."""

    error_type = "vendor_error"


_KEY_PARAM = re.compile(r"([?&]key=)[^&\s\"']+")


def redact_secrets(text: str, secrets: Sequence[str | None] = ()) -> str:
    """Remove credential values and ``key=`` query params from a message."""
    for secret in secrets:
        if secret and len(secret) >= 4:
            text = text.replace(secret, "[REDACTED]")
    return _KEY_PARAM.sub(r"\1[REDACTED]", text)


# ------------------------------------------------------------------
# Fragments
# ------------------------------------------------------------------


@dataclass
class TextFragment:
    text: str


@dataclass
class ToolCallFragment:
    """Part of a tool call. ``arguments`` is a JSON text delta or a full dict."""

    index: int
    id: str | None = None
    name: str = ""
    arguments: str | dict[str, Any] = ""


@dataclass
class UsageSnapshot:
    """Cumulative usage as last reported by the vendor within one stream."""

    input_tokens: int | None = None
    output_tokens: int | None = None


Fragment = Union[TextFragment, ToolCallFragment, UsageSnapshot]


@dataclass
class VendorRequest:
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"


# ------------------------------------------------------------------
# Stream parsers
# ------------------------------------------------------------------


class StreamParser(ABC):
    """Stateful per-stream parser: bytes in, fragments out.

    Input arrives as an undifferentiated byte stream. Bytes are decoded
    incrementally and buffered; only complete newline-terminated frames
    are consumed. Frames that fail to parse are dropped and counted.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_error: VendorError | None = None
        self.skipped = 0

    def feed(self, raw: bytes | str) -> list[Fragment]:
        """Consume a raw chunk and return fragments from complete frames.

        An error frame raises VendorError. When fragments precede it in the
        same chunk they are returned first and the error is raised by the
        next feed() or close().
        """
        self._raise_pending()
        text = raw if isinstance(raw, str) else self._decoder.decode(raw)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        fragments: list[Fragment] = []
        for line in lines:
            try:
                fragments.extend(self._consume_line(line.rstrip("\r")))
            except VendorError as e:
                if not fragments:
                    raise
                self._pending_error = e
                self._buffer = ""
                break
        return fragments

    def close(self) -> list[Fragment]:
        """Flush the trailing partial frame and any pending state."""
        self._raise_pending()
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        fragments: list[Fragment] = []
        if tail.strip():
            fragments.extend(self._consume_line(tail.rstrip("\r")))
        fragments.extend(self._finish())
        return fragments

    def _raise_pending(self) -> None:
        if self._pending_error is not None:
            error, self._pending_error = self._pending_error, None
            raise error

    def _consume_line(self, line: str) -> list[Fragment]:
        payload = self._extract_payload(line)
        if payload is None:
            return []
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            self.skipped += 1
            logger.debug("Skipping unparseable stream frame: %.80s", payload)
            return []
        if not isinstance(data, dict):
            self.skipped += 1
            return []
        return self.handle(data)

    @abstractmethod
    def _extract_payload(self, line: str) -> str | None:
        """Return the JSON payload of a frame line, or None to ignore it."""

    @abstractmethod
    def handle(self, data: dict[str, Any]) -> list[Fragment]:
        """Map one decoded vendor frame to fragments."""

    def _finish(self) -> list[Fragment]:
        return []


class SSEStreamParser(StreamParser):
    """``data: {json}`` lines; other SSE fields and comments are ignored."""

    def _extract_payload(self, line: str) -> str | None:
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        return payload


class NDJSONStreamParser(StreamParser):
    """One JSON object per line."""

    def _extract_payload(self, line: str) -> str | None:
        stripped = line.strip()
        return stripped or None


# ------------------------------------------------------------------
# Adapter interface
# ------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Stateless translator for one vendor.

    Subclasses declare ``vendor`` (wire error prefix and routing key) and
    ``credential_key`` (settings-table key, None when no key is needed).
    """

    vendor: ClassVar[str]
    credential_key: ClassVar[str | None] = None

    def __init__(self, model: str, credential: str | None, settings: Any) -> None:
        self.model = model
        self.credential = credential
        self._settings = settings

    @abstractmethod
    def build_request(
        self,
        history: Sequence[Message],
        system_prompt: str | None,
        tools: Sequence[ToolSchema],
        turn: Sequence[Message],
    ) -> VendorRequest:
        """Build the vendor request for the stored history plus the current turn."""

    @abstractmethod
    def parser(self) -> StreamParser:
        """Return a fresh parser for one vendor stream."""

    def supports_tools(self) -> bool:
        return True

    def secrets(self) -> list[str]:
        return [self.credential] if self.credential else []

    @staticmethod
    def tool_names_by_id(messages: Sequence[Message]) -> dict[str, str]:
        """Map tool_use ids to tool names (for vendors that key results by name)."""
        names: dict[str, str] = {}
        for msg in messages:
            for block in msg.content:
                if isinstance(block, ToolUseBlock):
                    names[block.id] = block.name
        return names
