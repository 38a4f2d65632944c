"""Conversation history loading and compaction.

Stored history is loaded once per session, before the first vendor call,
and trimmed to fit the model's context window. Compaction never calls a
model: removed messages are replaced by one rule-based summary message.

Every strategy works on *units*. An assistant message carrying tool_use
blocks and the following message carrying the matching tool_result blocks
form one unit and are kept or dropped together.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from conduit.api.models import (
    CompactionResult,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

Strategy = Literal["smart", "token-based", "sliding-window"]

# Input context window per model. Keys match exactly, then as substrings
# in table order.
CONTEXT_WINDOW: dict[str, int] = {
    "claude-opus-4": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-haiku-4": 200_000,
    "claude-sonnet-3.5": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-haiku-3": 200_000,
    "gpt-4o": 128_000,
    "gpt-4.1": 1_000_000,
    "gemini-1.5": 1_000_000,
    "gemini-2": 1_000_000,
    "ollama:llama3.1": 128_000,
    "ollama:llama3.2": 128_000,
    "ollama:qwen2.5": 32_000,
    "ollama:mistral": 32_000,
}
DEFAULT_CONTEXT_WINDOW = 200_000

MAX_OUTPUT_TOKENS: dict[str, int] = {
    "claude-opus-4": 32_000,
    "claude-sonnet-4": 16_000,
    "claude-haiku-4": 8_192,
    "claude-sonnet-3.5": 8_192,
    "claude-haiku-3": 4_096,
}
DEFAULT_MAX_OUTPUT_TOKENS = 16_000

OUTPUT_TOKEN_CAP = 20_000  # cap on the output reserve
SAFETY_BUFFER = 13_000  # subtracted from the effective window


def _lookup(table: dict[str, int], model: str, default: int) -> int:
    if model in table:
        return table[model]
    for key, value in table.items():
        if key in model:
            return value
    return default


def context_limit(model: str) -> int:
    return _lookup(CONTEXT_WINDOW, model, DEFAULT_CONTEXT_WINDOW)


def max_output_tokens(model: str) -> int:
    return _lookup(MAX_OUTPUT_TOKENS, model, DEFAULT_MAX_OUTPUT_TOKENS)


def auto_compact_threshold(model: str, pct_override: float | None = None) -> int:
    """Token count at which history should be compacted.

    effective window = context window - min(max output, 20k);
    threshold = effective window - 13k. ``pct_override`` (0-100] lowers the
    threshold to a percentage of the effective window, never above the
    default.
    """
    effective = context_limit(model) - min(max_output_tokens(model), OUTPUT_TOKEN_CAP)
    default = effective - SAFETY_BUFFER
    if pct_override is not None and 0 < pct_override <= 100:
        return min(math.floor(effective * (pct_override / 100)), default)
    return default


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """chars/4 heuristic; good enough for budget decisions."""

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio

    def estimate(self, text: str | Any) -> int:
        if not isinstance(text, str):
            text = str(text)
        if not text:
            return 0
        return max(1, math.ceil(len(text) * self._ratio))

    def estimate_message(self, msg: Message) -> int:
        total = 0
        for block in msg.content:
            if isinstance(block, TextBlock):
                total += self.estimate(block.text)
            elif isinstance(block, ToolResultBlock):
                total += self.estimate(block.content)
            elif isinstance(block, ToolUseBlock):
                total += self.estimate(json.dumps(block.arguments))
        return total

    def estimate_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


# ------------------------------------------------------------------
# Options
# ------------------------------------------------------------------


@dataclass
class CompactionOptions:
    max_tokens: int = 100_000
    max_messages: int = 20
    strategy: Strategy = "smart"
    preserve_tool_use: bool = True
    create_summary: bool = True
    enabled: bool = True


def recommended_options(model: str, strategy: Strategy = "smart") -> CompactionOptions:
    """Budget 75% of the context window; the rest is left for the system
    prompt and the current turn."""
    return CompactionOptions(max_tokens=math.floor(context_limit(model) * 0.75), strategy=strategy)


def options_from_settings(model: str, settings: Any) -> CompactionOptions:
    options = recommended_options(model, settings.compaction_strategy)
    options.max_messages = settings.compaction_max_messages
    options.enabled = settings.compaction_enabled
    if settings.autocompact_pct_override is not None:
        options.max_tokens = min(
            options.max_tokens,
            auto_compact_threshold(model, settings.autocompact_pct_override),
        )
    return options


# ------------------------------------------------------------------
# Units
# ------------------------------------------------------------------


@dataclass
class _Unit:
    messages: list[Message]
    tokens: int

    @property
    def has_tools(self) -> bool:
        return any(m.tool_uses or m.tool_results for m in self.messages)


def group_units(messages: Sequence[Message], estimator: TokenEstimator) -> list[_Unit]:
    """Pair each tool_use message with the message holding its results."""
    units: list[_Unit] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        group = [msg]
        if msg.role == "assistant" and msg.tool_uses and i + 1 < len(messages):
            ids = {b.id for b in msg.tool_uses}
            following = messages[i + 1]
            if any(r.tool_use_id in ids for r in following.tool_results):
                group.append(following)
                i += 1
        units.append(_Unit(messages=group, tokens=estimator.estimate_messages(group)))
        i += 1
    return units


def _flatten(units: Iterable[_Unit]) -> list[Message]:
    return [m for u in units for m in u.messages]


# ------------------------------------------------------------------
# Summary
# ------------------------------------------------------------------


def build_summary(removed: Sequence[Message]) -> str:
    user_texts: list[str] = []
    assistant_texts: list[str] = []
    tool_ops = 0
    for msg in removed:
        for block in msg.content:
            if isinstance(block, TextBlock) and block.text:
                if msg.role == "user":
                    user_texts.append(block.text)
                elif msg.role == "assistant":
                    assistant_texts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                tool_ops += 1

    parts: list[str] = []
    if user_texts:
        parts.append(f"User discussed: {'; '.join(user_texts[:3])}")
        if len(user_texts) > 3:
            parts.append(f"(and {len(user_texts) - 3} more topics)")
    if assistant_texts:
        parts.append(f"Assistant provided: {'; '.join(assistant_texts[:2])}")
        if len(assistant_texts) > 2:
            parts.append(f"(and {len(assistant_texts) - 2} more responses)")
    if tool_ops:
        parts.append(f"{tool_ops} tool operations were performed")
    return f"[Previous conversation summary: {'. '.join(parts)}.]"


# ------------------------------------------------------------------
# Strategies
# ------------------------------------------------------------------


def _keep_recent(units: Sequence[_Unit], budget: int) -> list[_Unit]:
    """Newest units that fit in ``budget``; stops at the first that doesn't."""
    kept: list[_Unit] = []
    used = 0
    for unit in reversed(units):
        if used + unit.tokens > budget:
            break
        kept.insert(0, unit)
        used += unit.tokens
    return kept


def _sliding_window(units: list[_Unit], options: CompactionOptions) -> list[_Unit]:
    kept: list[_Unit] = []
    count = 0
    for unit in reversed(units):
        if count + len(unit.messages) > options.max_messages:
            break
        kept.insert(0, unit)
        count += len(unit.messages)
    return kept


def _token_based(units: list[_Unit], options: CompactionOptions, estimator: TokenEstimator) -> list[_Unit]:
    kept = _keep_recent(units, options.max_tokens)
    if options.create_summary and len(kept) < len(units):
        removed = _flatten(units[: len(units) - len(kept)])
        summary_tokens = estimator.estimate(build_summary(removed))
        used = sum(u.tokens for u in kept)
        # Make room for the summary, oldest first
        while used + summary_tokens > options.max_tokens and len(kept) > 1:
            used -= kept.pop(0).tokens
    return kept


def _smart(units: list[_Unit], options: CompactionOptions) -> list[_Unit]:
    budget = options.max_tokens
    keep_ids: set[int] = set()
    if options.preserve_tool_use:
        used = 0
        for idx in range(len(units) - 1, -1, -1):
            unit = units[idx]
            if unit.has_tools and used + unit.tokens <= budget:
                keep_ids.add(idx)
                used += unit.tokens
        budget -= used

    used = 0
    for idx in range(len(units) - 1, -1, -1):
        unit = units[idx]
        if idx in keep_ids or (options.preserve_tool_use and unit.has_tools):
            continue
        if used + unit.tokens > budget:
            break
        keep_ids.add(idx)
        used += unit.tokens
    return [u for i, u in enumerate(units) if i in keep_ids]


def compact_messages(
    messages: Sequence[Message],
    options: CompactionOptions | None = None,
    estimator: TokenEstimator | None = None,
) -> CompactionResult:
    options = options or CompactionOptions()
    estimator = estimator or TokenEstimator()
    original = list(messages)
    unchanged = CompactionResult(
        messages=original,
        original_count=len(original),
        compacted_count=len(original),
    )
    if not original or not options.enabled:
        return unchanged

    if options.strategy == "sliding-window":
        if len(original) <= options.max_messages:
            return unchanged
    elif estimator.estimate_messages(original) <= options.max_tokens:
        return unchanged

    units = group_units(original, estimator)
    if options.strategy == "sliding-window":
        kept = _sliding_window(units, options)
    elif options.strategy == "token-based":
        kept = _token_based(units, options, estimator)
    elif options.strategy == "smart":
        kept = _smart(units, options)
    else:
        raise ValueError(f"Unknown compaction strategy: {options.strategy}")

    kept_ids = {id(u) for u in kept}
    removed = _flatten(u for u in units if id(u) not in kept_ids)
    if not removed:
        return unchanged

    result_messages = _flatten(kept)
    summary: str | None = None
    if options.create_summary:
        summary = build_summary(removed)
        result_messages.insert(0, Message(role="user", content=[TextBlock(text=summary)]))

    return CompactionResult(
        messages=result_messages,
        compacted=True,
        original_count=len(original),
        compacted_count=len(result_messages),
        tokens_removed=estimator.estimate_messages(removed),
        summary=summary,
    )


# ------------------------------------------------------------------
# History Loader
# ------------------------------------------------------------------


class MessageSource(Protocol):
    async def list_messages(self, conversation_id: str) -> list[Message]: ...


class HistoryLoader:
    """Reads a conversation's stored messages and compacts them."""

    def __init__(self, store: MessageSource, estimator: TokenEstimator | None = None) -> None:
        self._store = store
        self.estimator = estimator or TokenEstimator()

    async def load(
        self,
        conversation_id: str,
        options: CompactionOptions | None = None,
        exclude_ids: Iterable[str] = (),
    ) -> CompactionResult:
        excluded = set(exclude_ids)
        messages = [
            m for m in await self._store.list_messages(conversation_id)
            if m.content and (m.id is None or m.id not in excluded)
        ]
        result = compact_messages(messages, options, self.estimator)
        if result.compacted:
            logger.info(
                "Compacted conversation %s: %d -> %d messages (~%d tokens removed)",
                conversation_id,
                result.original_count,
                result.compacted_count,
                result.tokens_removed,
            )
        return result
