"""Storage tests against SQLite (aiosqlite): conversations, messages, settings."""

import pytest
from sqlalchemy import text

from conduit.api.models import Message as ChatMessage
from conduit.api.models import TextBlock, ToolUseBlock
from conduit.storage.store import ConversationStore


class TestDatabase:
    @pytest.mark.asyncio
    async def test_schema_created(self, db):
        async with db.session() as session:
            result = await session.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
            tables = {row[0] for row in result}

        assert {"conversations", "messages", "settings"} <= tables


class TestConversationStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        conv = await store.create_conversation(
            model="gpt-4o",
            system_prompt="Be terse.",
            workspace_path="/ws",
            allowed_tools=["read_file"],
            disallowed_tools=["bash"],
        )

        loaded = await store.get_conversation(conv.id)

        assert loaded == conv
        assert loaded.model == "gpt-4o"
        assert loaded.allowed_tools == ["read_file"]
        assert loaded.disallowed_tools == ["bash"]
        assert loaded.total_tokens == 0

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_conversation("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_messages_in_insertion_order(self, store):
        conv = await store.create_conversation(model="gpt-4o")
        for i in range(5):
            await store.append_message(conv.id, "user", [{"type": "text", "text": f"m{i}"}])

        messages = await store.list_messages(conv.id)

        assert [m.text for m in messages] == ["m0", "m1", "m2", "m3", "m4"]
        assert all(m.id for m in messages)

    @pytest.mark.asyncio
    async def test_stored_tool_blocks_round_trip(self, store):
        conv = await store.create_conversation(model="claude-sonnet-4-5")
        await store.append_message(
            conv.id,
            "assistant",
            [{"type": "tool_use", "id": "t1", "name": "bash", "input": {"command": "ls"}}],
        )
        await store.append_message(
            conv.id,
            "tool",
            [{"type": "tool_result", "tool_use_id": "t1", "content": "a.txt", "is_error": False}],
        )
        await store.append_message(conv.id, "user", [{"type": "nudge", "text": "go on"}])

        assistant, tool, user = await store.list_messages(conv.id)

        assert assistant.tool_uses[0].arguments == {"command": "ls"}
        assert tool.tool_results[0].content == "a.txt"
        assert user.text == "[User nudge]: go on"

    @pytest.mark.asyncio
    async def test_message_content_dicts_round_trip(self, store):
        conv = await store.create_conversation(model="claude-sonnet-4-5")
        turn = ChatMessage(
            role="assistant",
            content=[TextBlock(text="Checking."), ToolUseBlock(id="t1", name="read_file", arguments={"path": "a"})],
        )

        await store.append_message(conv.id, "assistant", turn.content_dicts())

        (loaded,) = await store.list_messages(conv.id)
        assert loaded.content == turn.content
        assert loaded.content_dicts()[1] == {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a"}}

    @pytest.mark.asyncio
    async def test_append_to_missing_conversation(self, store):
        with pytest.raises(LookupError):
            await store.append_message("missing", "user", [{"type": "text", "text": "x"}])

    @pytest.mark.asyncio
    async def test_record_assistant_turn(self, store):
        conv = await store.create_conversation(model="claude-sonnet-4-5")

        await store.record_assistant_turn(conv.id, "Answer.", "claude-sonnet-4-5", 120, 30)
        await store.record_assistant_turn(conv.id, "Again.", "claude-sonnet-4-5", 10, 5)

        rows = await store.list_message_rows(conv.id)
        assert [r.content for r in rows] == [
            [{"type": "text", "text": "Answer."}],
            [{"type": "text", "text": "Again."}],
        ]
        assert rows[0].token_count == 150
        assert rows[0].input_tokens == 120
        assert rows[0].model == "claude-sonnet-4-5"
        assert (await store.get_conversation(conv.id)).total_tokens == 165

    @pytest.mark.asyncio
    async def test_usage_by_model(self, store):
        a = await store.create_conversation(model="gpt-4o", workspace_path="/one")
        b = await store.create_conversation(model="gpt-4o", workspace_path="/two")
        c = await store.create_conversation(model="claude-sonnet-4-5", workspace_path="/one")
        await store.record_assistant_turn(a.id, "x", "gpt-4o", 100, 10)
        await store.record_assistant_turn(b.id, "y", "gpt-4o", 50, 5)
        await store.record_assistant_turn(c.id, "z", "claude-sonnet-4-5", 7, 3)
        await store.append_message(a.id, "user", [{"type": "text", "text": "ignored"}])

        usage = {row["model"]: row for row in await store.usage_by_model()}
        scoped = {row["model"]: row for row in await store.usage_by_model("/one")}

        assert usage["gpt-4o"] == {"model": "gpt-4o", "input_tokens": 150, "output_tokens": 15, "conversations": 2}
        assert usage["claude-sonnet-4-5"]["output_tokens"] == 3
        assert scoped["gpt-4o"]["conversations"] == 1
        assert scoped["gpt-4o"]["input_tokens"] == 100

    @pytest.mark.asyncio
    async def test_stores_are_independent_of_instance(self, db):
        """Two store instances share the database, not in-memory state."""
        first = ConversationStore(db)
        conv = await first.create_conversation(model="gpt-4o")

        assert await ConversationStore(db).get_conversation(conv.id) is not None


class TestSettingsStore:
    @pytest.mark.asyncio
    async def test_set_get_overwrite_delete(self, settings_store):
        assert await settings_store.get_value("openaiApiKey") is None

        await settings_store.set_value("openaiApiKey", "sk-1")
        await settings_store.set_value("openaiApiKey", "sk-2")
        assert await settings_store.get_value("openaiApiKey") == "sk-2"

        assert await settings_store.delete("openaiApiKey") is True
        assert await settings_store.delete("openaiApiKey") is False
        assert await settings_store.get_value("openaiApiKey") is None

    @pytest.mark.asyncio
    async def test_json_values(self, settings_store):
        await settings_store.set_value("preferences", {"theme": "dark", "tabs": [1, 2]})

        assert await settings_store.get_value("preferences") == {"theme": "dark", "tabs": [1, 2]}
