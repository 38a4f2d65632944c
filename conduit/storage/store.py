"""Conversation and settings persistence.

Public methods open their own session unless one is passed in, so they
are safe to call from concurrent sessions.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conduit.api.models import Conversation as ConversationView
from conduit.api.models import Message as ChatMessage
from conduit.api.models import TextBlock
from conduit.storage.database import Database
from conduit.storage.models import Conversation, Message, Setting

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


class ConversationStore:
    """Reads and appends conversations and messages."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        model: str,
        title: str | None = None,
        system_prompt: str | None = None,
        workspace_path: str | None = None,
        allowed_tools: list[str] | None = None,
        disallowed_tools: list[str] | None = None,
    ) -> ConversationView:
        async with self.db.session() as session:
            row = Conversation(
                id=new_id(),
                title=title or "New conversation",
                model=model,
                system_prompt=system_prompt,
                workspace_path=workspace_path,
                allowed_tools=allowed_tools,
                disallowed_tools=disallowed_tools,
            )
            session.add(row)
            await session.commit()
            return self._to_view(row)

    async def get_conversation(
        self, conversation_id: str, session: AsyncSession | None = None
    ) -> ConversationView | None:
        if session is None:
            async with self.db.session() as session:
                return await self._get_conversation(conversation_id, session)
        return await self._get_conversation(conversation_id, session)

    async def _get_conversation(self, conversation_id: str, session: AsyncSession) -> ConversationView | None:
        row = await session.get(Conversation, conversation_id)
        return self._to_view(row) if row else None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(self, conversation_id: str) -> list[ChatMessage]:
        """Stored messages in insertion order, as content blocks."""
        rows = await self.list_message_rows(conversation_id)
        return [ChatMessage.from_stored(r.role, r.content, r.id) for r in rows]

    async def list_message_rows(self, conversation_id: str) -> list[Message]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Message).where(Message.conversation_id == conversation_id).order_by(Message.seq)
            )
            return list(result.scalars().all())

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: list[dict[str, Any]],
        model: str | None = None,
        token_count: int = 0,
        input_tokens: int = 0,
        message_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> str:
        """Insert a message and bump the conversation's updated_at. Returns the id."""
        if session is None:
            async with self.db.session() as session:
                msg_id = await self._append_message(
                    conversation_id, role, content, model, token_count, input_tokens, message_id, session
                )
                await session.commit()
                return msg_id
        return await self._append_message(
            conversation_id, role, content, model, token_count, input_tokens, message_id, session
        )

    async def _append_message(
        self,
        conversation_id: str,
        role: str,
        content: list[dict[str, Any]],
        model: str | None,
        token_count: int,
        input_tokens: int,
        message_id: str | None,
        session: AsyncSession,
    ) -> str:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation not found: {conversation_id}")
        msg = Message(
            id=message_id or new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            model=model,
            token_count=token_count,
            input_tokens=input_tokens,
        )
        session.add(msg)
        conversation.updated_at = datetime.now(timezone.utc)
        await session.flush()
        return msg.id

    async def record_assistant_turn(
        self,
        conversation_id: str,
        text: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> str:
        """Persist a finished assistant turn and its token usage in one transaction."""
        total = input_tokens + output_tokens
        turn = ChatMessage(role="assistant", content=[TextBlock(text=text)])
        async with self.db.session() as session:
            msg_id = await self._append_message(
                conversation_id,
                "assistant",
                turn.content_dicts(),
                model,
                total,
                input_tokens,
                None,
                session,
            )
            conversation = await session.get(Conversation, conversation_id)
            conversation.total_tokens = (conversation.total_tokens or 0) + total
            await session.commit()
        return msg_id

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def usage_by_model(self, workspace_path: str | None = None) -> list[dict[str, Any]]:
        """Assistant token usage grouped by model."""
        stmt = (
            select(
                Message.model,
                func.coalesce(func.sum(Message.input_tokens), 0),
                func.coalesce(func.sum(Message.token_count - Message.input_tokens), 0),
                func.count(func.distinct(Message.conversation_id)),
            )
            .where(Message.role == "assistant", Message.model.is_not(None))
            .group_by(Message.model)
        )
        if workspace_path:
            stmt = stmt.join(Conversation, Conversation.id == Message.conversation_id).where(
                Conversation.workspace_path == workspace_path
            )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [
                {
                    "model": model,
                    "input_tokens": int(input_tokens),
                    "output_tokens": int(output_tokens),
                    "conversations": int(conversations),
                }
                for model, input_tokens, output_tokens, conversations in result.all()
            ]

    @staticmethod
    def _to_view(row: Conversation) -> ConversationView:
        return ConversationView(
            id=row.id,
            model=row.model,
            system_prompt=row.system_prompt,
            workspace_path=row.workspace_path,
            total_tokens=row.total_tokens or 0,
            allowed_tools=row.allowed_tools,
            disallowed_tools=row.disallowed_tools,
        )


class SettingsStore:
    """Key/value settings with JSON values (credentials, preferences)."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_value(self, key: str) -> Any | None:
        async with self.db.session() as session:
            row = await session.get(Setting, key)
            return row.value if row else None

    async def set_value(self, key: str, value: Any) -> None:
        async with self.db.session() as session:
            row = await session.get(Setting, key)
            if row is None:
                session.add(Setting(key=key, value=value))
            else:
                row.value = value
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self.db.session() as session:
            row = await session.get(Setting, key)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True
