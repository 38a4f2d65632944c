"""Google Gemini adapter (streamGenerateContent with tool calling).

Gemini differs from OpenAI/Anthropic:
- ``contents`` with ``parts`` instead of ``messages`` with ``content``
- roles are ``user`` / ``model``
- tools are ``functionDeclarations`` inside a ``tools`` array
- tool calls come back as ``functionCall`` parts, without call ids
- tool results go back as ``functionResponse`` parts in a ``user`` turn,
  keyed by function name
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


def to_function_declarations(tools: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    """Gemini wants the schema's properties directly, without wrapper fields."""
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "parameters": {
                "type": "object",
                "properties": tool.input_schema.get("properties", {}),
                "required": tool.input_schema.get("required", []),
            },
        }
        for tool in tools
    ]


class GeminiStreamParser(SSEStreamParser):
    def __init__(self) -> None:
        super().__init__()
        self._calls = 0

    def handle(self, data: dict[str, Any]) -> list[Fragment]:
        if "error" in data:
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise VendorError(f"{error.get('status', 'unknown')}: {error.get('message', '')}")

        fragments: list[Fragment] = []
        usage = data.get("usageMetadata")
        if usage:
            fragments.append(UsageSnapshot(
                input_tokens=usage.get("promptTokenCount"),
                output_tokens=usage.get("candidatesTokenCount"),
            ))

        candidates = data.get("candidates") or []
        if not candidates:
            return fragments
        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("thought"):
                continue
            if part.get("text"):
                fragments.append(TextFragment(text=part["text"]))
            call = part.get("functionCall")
            if call:
                # Each functionCall part is a complete call
                fragments.append(ToolCallFragment(
                    index=self._calls,
                    name=call.get("name", ""),
                    arguments=call.get("args") or {},
                ))
                self._calls += 1
        return fragments


class GeminiAdapter(ProviderAdapter):
    vendor = "gemini"
    credential_key = "googleApiKey"

    def build_request(
        self,
        history: Sequence[Message],
        system_prompt: str | None,
        tools: Sequence[ToolSchema],
        turn: Sequence[Message],
    ) -> VendorRequest:
        all_messages = [*history, *turn]
        names = self.tool_names_by_id(all_messages)
        contents = [
            formatted
            for formatted in (self._format_message(m, names) for m in all_messages)
            if formatted is not None
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": self._settings.temperature},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            body["tools"] = [{"functionDeclarations": to_function_declarations(tools)}]
        return VendorRequest(
            url=f"{self._settings.gemini_base_url}/models/{self.model}:streamGenerateContent?alt=sse",
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.credential or "",
            },
            body=body,
        )

    def parser(self) -> GeminiStreamParser:
        return GeminiStreamParser()

    @staticmethod
    def _format_message(msg: Message, names: dict[str, str]) -> dict[str, Any] | None:
        parts: list[dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append({"text": block.text})
            elif isinstance(block, ToolUseBlock):
                parts.append({"functionCall": {"name": block.name, "args": block.arguments}})
            elif isinstance(block, ToolResultBlock):
                parts.append({
                    "functionResponse": {
                        "name": names.get(block.tool_use_id, ""),
                        "response": {"content": block.content, "is_error": block.is_error},
                    }
                })
        for attachment in msg.attachments:
            parts.append({"inlineData": {"mimeType": attachment.media_type, "data": attachment.data}})
        if not parts:
            return None
        return {"role": "model" if msg.role == "assistant" else "user", "parts": parts}
