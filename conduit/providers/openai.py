"""OpenAI Chat Completions adapter (GPT-4o, GPT-4.1, o-series, ...).

Streams with ``stream_options.include_usage`` so the final chunk carries
token usage. Tool-call fragments arrive keyed by ``index``; the id and
name come on the first fragment, argument JSON is spread across the rest.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from conduit.api.models import Message, ToolSchema
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

# Models known to support tool/function calling
TOOL_CAPABLE_MODELS = ("gpt-4", "gpt-4o", "gpt-4.1", "gpt-5", "gpt-3.5-turbo", "o1", "o3", "o4")


def to_function_tools(tools: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    """OpenAI/Ollama function declaration shape."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


class OpenAIStreamParser(SSEStreamParser):
    def handle(self, data: dict[str, Any]) -> list[Fragment]:
        if "error" in data:
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise VendorError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

        fragments: list[Fragment] = []
        usage = data.get("usage")
        if usage:
            fragments.append(UsageSnapshot(
                input_tokens=usage.get("prompt_tokens"),
                output_tokens=usage.get("completion_tokens"),
            ))

        choices = data.get("choices") or []
        if not choices:
            return fragments
        delta = choices[0].get("delta") or {}

        if delta.get("content"):
            fragments.append(TextFragment(text=delta["content"]))

        for tc in delta.get("tool_calls") or []:
            function = tc.get("function") or {}
            fragments.append(ToolCallFragment(
                index=tc.get("index", 0),
                id=tc.get("id") or None,
                name=function.get("name") or "",
                arguments=function.get("arguments") or "",
            ))
        return fragments


class OpenAIAdapter(ProviderAdapter):
    vendor = "openai"
    credential_key = "openaiApiKey"

    def supports_tools(self) -> bool:
        return any(m in self.model for m in TOOL_CAPABLE_MODELS)

    def build_request(
        self,
        history: Sequence[Message],
        system_prompt: str | None,
        tools: Sequence[ToolSchema],
        turn: Sequence[Message],
    ) -> VendorRequest:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for msg in [*history, *turn]:
            messages.extend(self._format_message(msg))

        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = to_function_tools(tools)
            body["tool_choice"] = "auto"
        return VendorRequest(
            url=f"{self._settings.openai_base_url}/chat/completions",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.credential}",
            },
            body=body,
        )

    def parser(self) -> OpenAIStreamParser:
        return OpenAIStreamParser()

    @staticmethod
    def _format_message(msg: Message) -> list[dict[str, Any]]:
        """One internal message can expand to several OpenAI messages (tool role)."""
        if msg.role == "tool" or msg.tool_results:
            return [
                {"role": "tool", "tool_call_id": r.tool_use_id, "content": r.content}
                for r in msg.tool_results
            ]

        text = msg.text
        if msg.role == "assistant":
            out: dict[str, Any] = {"role": "assistant", "content": text or None}
            if msg.tool_uses:
                out["tool_calls"] = [
                    {
                        "id": tu.id,
                        "type": "function",
                        "function": {"name": tu.name, "arguments": json.dumps(tu.arguments)},
                    }
                    for tu in msg.tool_uses
                ]
            elif not text:
                return []
            return [out]

        if msg.attachments:
            parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
            parts.extend(
                {"type": "image_url", "image_url": {"url": f"data:{a.media_type};base64,{a.data}"}}
                for a in msg.attachments
            )
            return [{"role": "user", "content": parts}]
        if not text:
            return []
        return [{"role": "user", "content": text}]
