"""Ollama /api/chat adapter (local models, newline-delimited JSON stream).

Tool calling and vision depend on the model. No credential is needed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from conduit.api.models import Message, ToolSchema
from conduit.providers.base import (
    Fragment,
    NDJSONStreamParser,
    ProviderAdapter,
    TextFragment,
    ToolCallFragment,
    UsageSnapshot,
    VendorError,
    VendorRequest,
)
from conduit.providers.openai import to_function_tools

logger = logging.getLogger(__name__)

TOOL_CAPABLE_MODELS = ("llama3.1", "llama3.2", "llama3.3", "qwen2.5", "qwen3", "mistral", "mixtral")
VISION_CAPABLE_MODELS = ("llama3.2-vision", "llava", "bakllava")


class OllamaStreamParser(NDJSONStreamParser):
    def __init__(self) -> None:
        super().__init__()
        self._calls = 0

    def handle(self, data: dict[str, Any]) -> list[Fragment]:
        if data.get("error"):
            raise VendorError(str(data["error"]))

        fragments: list[Fragment] = []
        message = data.get("message") or {}
        if message.get("content"):
            fragments.append(TextFragment(text=message["content"]))

        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            arguments = function.get("arguments") or {}
            fragments.append(ToolCallFragment(
                index=self._calls,
                id=tc.get("id") or None,
                name=function.get("name", ""),
                arguments=arguments,
            ))
            self._calls += 1

        if data.get("done"):
            fragments.append(UsageSnapshot(
                input_tokens=data.get("prompt_eval_count", 0),
                output_tokens=data.get("eval_count", 0),
            ))
        return fragments


class OllamaAdapter(ProviderAdapter):
    vendor = "ollama"
    credential_key = None

    def supports_tools(self) -> bool:
        return any(m in self.model for m in TOOL_CAPABLE_MODELS)

    def supports_vision(self) -> bool:
        return any(m in self.model for m in VISION_CAPABLE_MODELS)

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
        names = self.tool_names_by_id([*history, *turn])
        for msg in [*history, *turn]:
            messages.extend(self._format_message(msg, names))

        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "options": {"temperature": self._settings.temperature},
        }
        if tools:
            body["tools"] = to_function_tools(tools)
        return VendorRequest(
            url=f"{self._settings.ollama_base_url}/api/chat",
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def parser(self) -> OllamaStreamParser:
        return OllamaStreamParser()

    def _format_message(self, msg: Message, names: dict[str, str]) -> list[dict[str, Any]]:
        if msg.tool_results:
            return [
                {"role": "tool", "content": r.content, "tool_name": names.get(r.tool_use_id, "")}
                for r in msg.tool_results
            ]

        text = msg.text
        if msg.role == "assistant":
            out: dict[str, Any] = {"role": "assistant", "content": text}
            if msg.tool_uses:
                out["tool_calls"] = [
                    {"function": {"name": tu.name, "arguments": tu.arguments}}
                    for tu in msg.tool_uses
                ]
            elif not text:
                return []
            return [out]

        out = {"role": "user", "content": text}
        images = [a.data for a in msg.attachments if a.is_image]
        if images and self.supports_vision():
            out["images"] = images
        elif msg.attachments:
            logger.warning("Model %s does not support attachments; ignoring %d", self.model, len(msg.attachments))
        if not text and "images" not in out:
            return []
        return [out]
