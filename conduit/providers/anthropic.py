"""Anthropic Messages API adapter.

Request side: content blocks map almost 1:1; tool-role turns collapse into
the "user" role carrying tool_result blocks.

Stream side notes:
- ping events are keepalives and are skipped.
- stop_reason and output usage arrive in message_delta, input usage in
  message_start.
- In-stream error events can arrive with HTTP 200.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from conduit.api.models import (
    Message,
    TextBlock,
    ToolResultBlock,
    ToolSchema,
    ToolUseBlock,
)
from conduit.providers.base import (
    Fragment,
    ProviderAdapter,
    SSEStreamParser,
    TextFragment,
    ToolCallFragment,
    UsageSnapshot,
    VendorError,
    VendorRequest,
)

_API_VERSION = "2023-06-01"


def build_anthropic_headers(api_key: str) -> dict[str, str]:
    """Auth headers. OAT tokens (sk-ant-oat*) need Bearer auth plus beta headers."""
    headers = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    if "sk-ant-oat" in api_key:
        headers["authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
        headers["anthropic-dangerous-direct-browser-access"] = "true"
    else:
        headers["x-api-key"] = api_key
    return headers


class AnthropicStreamParser(SSEStreamParser):
    def handle(self, data: dict[str, Any]) -> list[Fragment]:
        event_type = data.get("type")

        if event_type == "error":
            error = data.get("error", {})
            raise VendorError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage") or {}
            return [UsageSnapshot(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )]

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            index = data.get("index", 0)
            if block.get("type") == "tool_use":
                fragment = ToolCallFragment(index=index, id=block.get("id") or None, name=block.get("name", ""))
                if block.get("input"):
                    fragment.arguments = block["input"]
                return [fragment]
            if block.get("type") == "text" and block.get("text"):
                return [TextFragment(text=block["text"])]
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            if delta.get("type") == "text_delta":
                return [TextFragment(text=delta.get("text", ""))]
            if delta.get("type") == "input_json_delta":
                return [ToolCallFragment(index=data.get("index", 0), arguments=delta.get("partial_json", ""))]
            return []

        if event_type == "message_delta":
            usage = data.get("usage") or {}
            if usage:
                return [UsageSnapshot(
                    input_tokens=usage.get("input_tokens"),
                    output_tokens=usage.get("output_tokens"),
                )]
            return []

        # ping, content_block_stop, message_stop, future event types
        return []


class AnthropicAdapter(ProviderAdapter):
    vendor = "anthropic"
    credential_key = "anthropicApiKey"

    def build_request(
        self,
        history: Sequence[Message],
        system_prompt: str | None,
        tools: Sequence[ToolSchema],
        turn: Sequence[Message],
    ) -> VendorRequest:
        messages = [
            formatted
            for formatted in (self._format_message(m) for m in [*history, *turn])
            if formatted is not None
        ]
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._settings.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            body["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        return VendorRequest(
            url=f"{self._settings.anthropic_base_url}/v1/messages",
            headers=build_anthropic_headers(self.credential or ""),
            body=body,
        )

    def parser(self) -> AnthropicStreamParser:
        return AnthropicStreamParser()

    @staticmethod
    def _format_message(msg: Message) -> dict[str, Any] | None:
        blocks: list[dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.arguments,
                })
            elif isinstance(block, ToolResultBlock):
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                    "is_error": block.is_error,
                })
        for attachment in msg.attachments:
            source = {"type": "base64", "media_type": attachment.media_type, "data": attachment.data}
            kind = "image" if attachment.is_image else "document"
            blocks.append({"type": kind, "source": source})
        if not blocks:
            return None
        return {"role": "assistant" if msg.role == "assistant" else "user", "content": blocks}
