"""Provider adapters, one closed variant per supported vendor.

Public API: create_adapter() / resolve_vendor() plus the shared types
from base.py.
"""

from __future__ import annotations

from typing import Any, Protocol

from conduit.providers.anthropic import AnthropicAdapter
from conduit.providers.base import (
    AuthError,
    EngineError,
    Fragment,
    ProviderAdapter,
    StreamParser,
    TextFragment,
    ToolCallFragment,
    UsageSnapshot,
    VendorError,
    VendorRequest,
    redact_secrets,
)
from conduit.providers.gemini import GeminiAdapter
from conduit.providers.ollama import OllamaAdapter
from conduit.providers.openai import OpenAIAdapter

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
}

_NAME_PREFIXES: list[tuple[tuple[str, ...], str]] = [
    (("claude-",), "anthropic"),
    (("gpt-", "o1", "o3", "o4", "chatgpt"), "openai"),
    (("gemini-",), "gemini"),
]

_AUTH_HINTS = {
    "anthropic": "Anthropic API key not configured. Set ANTHROPIC_API_KEY or add it in Settings.",
    "openai": "OpenAI API key not configured. Set OPENAI_API_KEY or add it in Settings.",
    "gemini": "Google API key not configured. Set GOOGLE_API_KEY or add it in Settings.",
}


class Credentials(Protocol):
    async def resolve(self, credential_key: str) -> str | None: ...


def resolve_vendor(model: str) -> tuple[str, str]:
    """Return (vendor, vendor_model) for a model id.

    Explicit ``vendor:model`` prefixes win; otherwise well-known model name
    prefixes decide.
    """
    if ":" in model:
        prefix, rest = model.split(":", 1)
        if prefix in ADAPTERS:
            return prefix, rest
    for prefixes, vendor in _NAME_PREFIXES:
        if model.startswith(prefixes):
            return vendor, model
    raise VendorError(f"No provider for model '{model}'")


async def create_adapter(model: str, credentials: Credentials, settings: Any) -> ProviderAdapter:
    """Resolve vendor + credential and build the adapter.

    Raises AuthError before any network I/O when the vendor needs a key
    and none is configured.
    """
    vendor, vendor_model = resolve_vendor(model)
    adapter_cls = ADAPTERS[vendor]
    credential: str | None = None
    if adapter_cls.credential_key is not None:
        credential = await credentials.resolve(adapter_cls.credential_key)
        if not credential:
            raise AuthError(_AUTH_HINTS.get(vendor, f"{vendor} credential not configured"))
    return adapter_cls(vendor_model, credential, settings)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "AuthError",
    "EngineError",
    "Fragment",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "StreamParser",
    "TextFragment",
    "ToolCallFragment",
    "UsageSnapshot",
    "VendorError",
    "VendorRequest",
    "create_adapter",
    "redact_secrets",
    "resolve_vendor",
]
