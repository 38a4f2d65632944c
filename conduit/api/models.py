"""Shared data models for the engine.

Kept apart from runner.py so compaction.py, tools.py and the provider
adapters can import them without circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["user", "assistant", "tool"]


# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ThinkingBlock:
    thinking: str
    type: Literal["thinking"] = "thinking"


@dataclass
class ToolUseBlock:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Serialize a content block to its stored JSON shape."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.arguments}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


def block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Parse a stored block dict. Unknown block types return None.

    Legacy ``nudge`` blocks are normalized to text so they can be sent
    to any vendor.
    """
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=str(data.get("text", "")))
    if block_type == "nudge":
        return TextBlock(text=f"[User nudge]: {data.get('text', '')}")
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(data.get("thinking", "")))
    if block_type == "tool_use":
        arguments = data.get("input", data.get("arguments")) or {}
        return ToolUseBlock(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=arguments if isinstance(arguments, dict) else {},
        )
    if block_type == "tool_result":
        content = data.get("content", "")
        if not isinstance(content, str):
            # Vendor-style list content: keep the text parts only
            content = "\n".join(
                item.get("text", "") for item in content if isinstance(item, dict)
            ) if isinstance(content, list) else str(content)
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id", "")),
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    return None


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass
class Attachment:
    """Inline request-side attachment (base64 payload)."""

    media_type: str
    data: str

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)
    id: str | None = None
    # Request-side only, never persisted
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def content_dicts(self) -> list[dict[str, Any]]:
        return [block_to_dict(b) for b in self.content]

    @classmethod
    def from_stored(cls, role: str, content: Any, id: str | None = None) -> "Message":
        """Build a Message from a stored row (JSON list or plain string)."""
        if isinstance(content, list):
            blocks = [
                b for b in (block_from_dict(item) for item in content if isinstance(item, dict))
                if b is not None
            ]
        else:
            blocks = [TextBlock(text=str(content))]
        return cls(role=role if role in ("user", "assistant", "tool") else "user", content=blocks, id=id)


@dataclass
class Conversation:
    """Read view of a stored conversation."""

    id: str
    model: str
    system_prompt: str | None = None
    workspace_path: str | None = None
    total_tokens: int = 0
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None


# ------------------------------------------------------------------
# Transient session types
# ------------------------------------------------------------------


@dataclass
class ToolCall:
    """A model-requested tool invocation, fully assembled."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolSchema:
    """Internal tool declaration (Anthropic-style input_schema)."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class TurnInput:
    """The caller-supplied user turn for one session."""

    content: str
    attachments: list[Attachment] = field(default_factory=list)
    message_id: str | None = None  # id of the already-persisted user message

    def to_message(self) -> Message:
        return Message(
            role="user",
            content=[TextBlock(text=self.content)],
            id=self.message_id,
            attachments=list(self.attachments),
        )


@dataclass
class CompactionResult:
    """History handed to the session, plus what compaction removed."""

    messages: list[Message]
    compacted: bool = False
    original_count: int = 0
    compacted_count: int = 0
    tokens_removed: int = 0
    summary: str | None = None


@dataclass
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StreamEvent:
    """A single wire-visible event. ``data`` is the full JSON payload."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}
