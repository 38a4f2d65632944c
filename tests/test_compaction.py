"""Tests for history compaction: units, strategies, thresholds, loader."""

import pytest

from conduit.api.compaction import (
    CompactionOptions,
    HistoryLoader,
    TokenEstimator,
    auto_compact_threshold,
    build_summary,
    compact_messages,
    context_limit,
    group_units,
    max_output_tokens,
    options_from_settings,
    recommended_options,
)
from conduit.api.models import Message, TextBlock, ToolResultBlock, ToolUseBlock


def _user(text: str, id: str | None = None) -> Message:
    return Message(role="user", content=[TextBlock(text=text)], id=id)


def _assistant(text: str) -> Message:
    return Message(role="assistant", content=[TextBlock(text=text)])


def _tool_pair(call_id: str, result: str = "ok") -> list[Message]:
    return [
        Message(role="assistant", content=[ToolUseBlock(id=call_id, name="read_file", arguments={"path": "a"})]),
        Message(role="tool", content=[ToolResultBlock(tool_use_id=call_id, content=result)]),
    ]


def _assert_pairs_intact(messages: list[Message]) -> None:
    """Every kept tool_use is immediately followed by its results, and vice versa."""
    for i, msg in enumerate(messages):
        if msg.tool_uses:
            assert i + 1 < len(messages)
            result_ids = {r.tool_use_id for r in messages[i + 1].tool_results}
            assert {b.id for b in msg.tool_uses} <= result_ids
        if msg.tool_results:
            assert i > 0 and messages[i - 1].tool_uses


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_chars_over_four_rounded_up(self):
        est = TokenEstimator()

        assert est.estimate("") == 0
        assert est.estimate("a") == 1
        assert est.estimate("abcd") == 1
        assert est.estimate("abcde") == 2

    def test_message_counts_all_block_kinds(self):
        est = TokenEstimator()
        msg = Message(
            role="assistant",
            content=[
                TextBlock(text="x" * 8),
                ToolUseBlock(id="t", name="n", arguments={}),
                ToolResultBlock(tool_use_id="t", content="y" * 4),
            ],
        )

        # 8 chars -> 2, "{}" -> 1, 4 chars -> 1
        assert est.estimate_message(msg) == 4


# ---------------------------------------------------------------------------
# Model limits
# ---------------------------------------------------------------------------


class TestModelLimits:
    def test_context_limits(self):
        assert context_limit("claude-sonnet-4-5-20250929") == 200_000
        assert context_limit("gpt-4o-mini") == 128_000
        assert context_limit("gemini-2.0-flash") == 1_000_000
        assert context_limit("ollama:qwen2.5") == 32_000
        assert context_limit("unknown-model") == 200_000

    def test_auto_compact_threshold_default(self):
        # 200k - min(16k, 20k) - 13k
        assert max_output_tokens("claude-sonnet-4-5") == 16_000
        assert auto_compact_threshold("claude-sonnet-4-5") == 171_000

    def test_output_reserve_capped(self):
        # opus reserves min(32k, 20k)
        assert auto_compact_threshold("claude-opus-4-1") == 200_000 - 20_000 - 13_000

    def test_pct_override_only_lowers(self):
        assert auto_compact_threshold("claude-sonnet-4-5", 50) == 92_000
        assert auto_compact_threshold("claude-sonnet-4-5", 100) == 171_000

    def test_recommended_options(self):
        options = recommended_options("gpt-4o", "token-based")

        assert options.max_tokens == 96_000
        assert options.strategy == "token-based"

    def test_options_from_settings(self, settings):
        settings.compaction_strategy = "sliding-window"
        settings.compaction_max_messages = 7
        settings.autocompact_pct_override = 10

        options = options_from_settings("claude-sonnet-4-5", settings)

        assert options.strategy == "sliding-window"
        assert options.max_messages == 7
        assert options.max_tokens == 18_400


# ---------------------------------------------------------------------------
# Units and summary
# ---------------------------------------------------------------------------


class TestUnits:
    def test_tool_use_paired_with_results(self):
        messages = [_user("hi"), *_tool_pair("t1"), _assistant("done")]

        units = group_units(messages, TokenEstimator())

        assert [len(u.messages) for u in units] == [1, 2, 1]
        assert units[1].has_tools

    def test_unmatched_tool_use_stands_alone(self):
        messages = [
            Message(role="assistant", content=[ToolUseBlock(id="t1", name="x")]),
            _user("interrupted"),
        ]

        units = group_units(messages, TokenEstimator())

        assert [len(u.messages) for u in units] == [1, 1]


class TestBuildSummary:
    def test_summary_text(self):
        removed = [
            _user("one"), _assistant("r1"),
            _user("two"), _assistant("r2"),
            _user("three"), _assistant("r3"),
            _user("four"),
            *_tool_pair("t1"),
        ]

        summary = build_summary(removed)

        assert summary == (
            "[Previous conversation summary: User discussed: one; two; three. "
            "(and 1 more topics). Assistant provided: r1; r2. (and 1 more responses). "
            "1 tool operations were performed.]"
        )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestCompactMessages:
    def test_under_budget_is_unchanged(self):
        messages = [_user("hi"), _assistant("hello")]

        result = compact_messages(messages, CompactionOptions(max_tokens=1000))

        assert not result.compacted
        assert result.messages == messages
        assert result.original_count == result.compacted_count == 2

    def test_disabled(self):
        messages = [_user("x" * 4000)]

        result = compact_messages(messages, CompactionOptions(max_tokens=10, enabled=False))

        assert not result.compacted

    def test_empty(self):
        result = compact_messages([])

        assert result.messages == []
        assert not result.compacted

    def test_sliding_window_keeps_recent_messages(self):
        messages = [_user(f"u{i}") if i % 2 == 0 else _assistant(f"a{i}") for i in range(6)]

        result = compact_messages(messages, CompactionOptions(strategy="sliding-window", max_messages=2))

        assert result.compacted
        assert [m.text for m in result.messages[1:]] == ["u4", "a5"]
        assert result.messages[0].text.startswith("[Previous conversation summary:")
        assert result.original_count == 6
        assert result.compacted_count == 3

    def test_sliding_window_never_splits_a_pair(self):
        messages = [_user("start"), *_tool_pair("t1"), *_tool_pair("t2")]

        # A window of 3 can hold only one pair plus nothing from the next unit
        result = compact_messages(
            messages, CompactionOptions(strategy="sliding-window", max_messages=3, create_summary=False)
        )

        assert [m.role for m in result.messages] == ["assistant", "tool"]
        assert result.messages[0].tool_uses[0].id == "t2"
        _assert_pairs_intact(result.messages)

    def test_token_based_keeps_newest(self):
        messages = [_user("a" * 400), _assistant("b" * 400), _user("c" * 40), _assistant("d" * 40)]

        result = compact_messages(
            messages, CompactionOptions(strategy="token-based", max_tokens=30, create_summary=False)
        )

        assert [m.text for m in result.messages] == ["c" * 40, "d" * 40]
        assert result.tokens_removed == 200

    def test_token_based_makes_room_for_summary(self):
        messages = [_user("a" * 400), _user("b" * 40), _user("c" * 40)]

        result = compact_messages(messages, CompactionOptions(strategy="token-based", max_tokens=25))

        # Both 10-token messages fit alone, but not with the summary
        assert len(result.messages) == 2
        assert result.messages[1].text == "c" * 40

    def test_smart_prefers_tool_units(self):
        old_pair = _tool_pair("t_old", "r" * 40)
        messages = [
            *old_pair,
            _user("x" * 200),
            _assistant("y" * 200),
            _user("latest"),
        ]

        result = compact_messages(messages, CompactionOptions(max_tokens=40, create_summary=False))

        kept_roles = [m.role for m in result.messages]
        assert kept_roles == ["assistant", "tool", "user"]
        assert result.messages[-1].text == "latest"
        _assert_pairs_intact(result.messages)

    @pytest.mark.parametrize("strategy", ["smart", "token-based", "sliding-window"])
    def test_pairs_survive_every_strategy(self, strategy):
        messages = []
        for i in range(8):
            messages.append(_user(f"question {i} " + "q" * 60))
            messages.extend(_tool_pair(f"t{i}", "r" * 80))
            messages.append(_assistant(f"answer {i}"))

        result = compact_messages(
            messages, CompactionOptions(strategy=strategy, max_tokens=120, max_messages=5)
        )

        assert result.compacted
        _assert_pairs_intact(result.messages[1:])

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="Unknown compaction strategy"):
            compact_messages([_user("x" * 100)], CompactionOptions(strategy="bogus", max_tokens=1))


# ---------------------------------------------------------------------------
# HistoryLoader
# ---------------------------------------------------------------------------


class _ListSource:
    def __init__(self, messages: list[Message]) -> None:
        self.messages = messages

    async def list_messages(self, conversation_id: str) -> list[Message]:
        return list(self.messages)


class TestHistoryLoader:
    @pytest.mark.asyncio
    async def test_excludes_current_turn_and_empty_messages(self):
        source = _ListSource([
            _user("old", id="m1"),
            Message(role="assistant", content=[], id="m2"),
            _user("current", id="m3"),
        ])

        result = await HistoryLoader(source).load("c1", exclude_ids=["m3"])

        assert [m.id for m in result.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_applies_compaction(self):
        source = _ListSource([_user(f"m{i}") for i in range(10)])

        result = await HistoryLoader(source).load(
            "c1", CompactionOptions(strategy="sliding-window", max_messages=4)
        )

        assert result.compacted
        assert result.compacted_count == 5

    @pytest.mark.asyncio
    async def test_reads_from_store(self, store):
        conv = await store.create_conversation(model="claude-sonnet-4-5")
        await store.append_message(conv.id, "user", [{"type": "text", "text": "hi"}])
        await store.append_message(conv.id, "assistant", [{"type": "text", "text": "hello"}])

        result = await HistoryLoader(store).load(conv.id)

        assert [(m.role, m.text) for m in result.messages] == [("user", "hi"), ("assistant", "hello")]
