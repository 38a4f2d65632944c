"""REST API for the Conduit engine.

Endpoints:
  POST /conversations                       - Create a conversation
  GET  /conversations/{id}                  - Conversation detail
  GET  /conversations/{id}/messages         - Stored messages
  GET  /conversations/{id}/compaction       - Compaction status for the next turn
  POST /chat/{conversation_id}/stream       - Send a user turn, stream the response (SSE)
  GET  /costs/summary                       - Token usage and estimated cost per model
  GET  /health                              - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from conduit.api.compaction import (
    HistoryLoader,
    auto_compact_threshold,
    context_limit,
    options_from_settings,
)
from conduit.api.models import Attachment, StreamEvent, TurnInput
from conduit.api.runner import SessionRunner
from conduit.api.usage import calculate_cost
from conduit.config import Settings
from conduit.storage.database import Database
from conduit.storage.store import ConversationStore

logger = logging.getLogger(__name__)


def format_sse(event: StreamEvent) -> str:
    """Serialize one event as a server-sent-events frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


def _parse_attachments(raw: Any) -> list[Attachment]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValueError("attachments must be a list")
    attachments = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("each attachment must be an object")
        media_type = item.get("media_type") or item.get("mediaType")
        data = item.get("data")
        if not isinstance(media_type, str) or not isinstance(data, str) or not data:
            raise ValueError("attachments need 'media_type' and base64 'data'")
        attachments.append(Attachment(media_type=media_type, data=data))
    return attachments


def _optional_str_list(body: dict[str, Any], key: str) -> list[str] | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings")
    return value


def create_app(
    runner: SessionRunner,
    store: ConversationStore,
    loader: HistoryLoader,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /conversations - Create a conversation."""
        try:
            body = await request.json()
        except Exception:
            body = {}
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        try:
            allowed = _optional_str_list(body, "allowed_tools")
            disallowed = _optional_str_list(body, "disallowed_tools")
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            conversation = await store.create_conversation(
                model=body.get("model") or settings.default_model,
                title=body.get("title"),
                system_prompt=body.get("system_prompt"),
                workspace_path=body.get("workspace_path"),
                allowed_tools=allowed,
                disallowed_tools=disallowed,
            )
        except Exception as e:
            logger.error("Create conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        return JSONResponse(
            {"id": conversation.id, "model": conversation.model, "workspace_path": conversation.workspace_path},
            status_code=201,
        )

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Conversation detail."""
        conversation = await store.get_conversation(request.path_params["id"])
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(
            {
                "id": conversation.id,
                "model": conversation.model,
                "system_prompt": conversation.system_prompt,
                "workspace_path": conversation.workspace_path,
                "total_tokens": conversation.total_tokens,
                "allowed_tools": conversation.allowed_tools,
                "disallowed_tools": conversation.disallowed_tools,
            }
        )

    async def list_messages(request: Request) -> JSONResponse:
        """GET /conversations/{id}/messages - Stored messages in order."""
        conversation_id = request.path_params["id"]
        if await store.get_conversation(conversation_id) is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        rows = await store.list_message_rows(conversation_id)
        return JSONResponse(
            {
                "messages": [
                    {
                        "id": r.id,
                        "role": r.role,
                        "content": r.content,
                        "model": r.model,
                        "token_count": r.token_count,
                        "timestamp": r.timestamp.isoformat() if r.timestamp else None,
                    }
                    for r in rows
                ]
            }
        )

    async def compaction_status(request: Request) -> JSONResponse:
        """GET /conversations/{id}/compaction - Would the next turn compact history?"""
        conversation = await store.get_conversation(request.path_params["id"])
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        options = options_from_settings(conversation.model, settings)
        options.create_summary = False
        try:
            result = await loader.load(conversation.id, options)
        except Exception as e:
            logger.error("Compaction status error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(
            {
                "needs_compaction": result.compacted,
                "original_count": result.original_count,
                "compacted_count": result.compacted_count,
                "tokens_removed": result.tokens_removed,
                "context_limit": context_limit(conversation.model),
                "recommended_max_tokens": options.max_tokens,
                "auto_compact_threshold": auto_compact_threshold(
                    conversation.model, settings.autocompact_pct_override
                ),
            }
        )

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/{conversation_id}/stream - SSE streaming session."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        content = body.get("content")
        if not isinstance(content, str) or not content:
            return JSONResponse({"error": "Missing required field: content"}, status_code=400)
        try:
            attachments = _parse_attachments(body.get("attachments"))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        conversation = await store.get_conversation(request.path_params["conversation_id"])
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)

        turn = TurnInput(content=content, attachments=attachments)
        # The user turn is stored before streaming; attachments are not persisted
        try:
            turn.message_id = await store.append_message(
                conversation.id, "user", turn.to_message().content_dicts()
            )
        except Exception as e:
            logger.error("Failed to save user message: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        async def event_generator() -> AsyncIterator[str]:
            async for event in runner.stream_session(conversation, turn):
                yield format_sse(event)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def costs_summary(request: Request) -> JSONResponse:
        """GET /costs/summary - Token usage and estimated cost per model."""
        workspace_path = request.query_params.get("workspacePath") or request.query_params.get("workspace_path")
        try:
            rows = await store.usage_by_model(workspace_path)
        except Exception as e:
            logger.error("Costs summary error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        by_model = []
        for row in rows:
            cost = calculate_cost(row["model"], row["input_tokens"], row["output_tokens"])
            by_model.append(
                {
                    "model": row["model"],
                    "cost_usd": round(cost, 6),
                    "input_tokens": row["input_tokens"],
                    "output_tokens": row["output_tokens"],
                    "tokens": row["input_tokens"] + row["output_tokens"],
                    "conversations": row["conversations"],
                }
            )
        by_model.sort(key=lambda m: m["cost_usd"], reverse=True)

        input_tokens = sum(m["input_tokens"] for m in by_model)
        output_tokens = sum(m["output_tokens"] for m in by_model)
        return JSONResponse(
            {
                "total_cost_usd": round(sum(m["cost_usd"] for m in by_model), 6),
                "total_tokens": input_tokens + output_tokens,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "by_model": by_model,
            }
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            from sqlalchemy import text

            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations/{id}", get_conversation),
        Route("/conversations/{id}/messages", list_messages),
        Route("/conversations/{id}/compaction", compaction_status),
        Route("/chat/{conversation_id}/stream", chat_stream, methods=["POST"]),
        Route("/costs/summary", costs_summary),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
