"""Conduit server entry point.

Initializes all components and starts the server:
  Settings -> Database -> Stores -> ToolDispatcher -> SessionRunner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from conduit.api.builtin_tools import register_builtin_tools
from conduit.api.compaction import HistoryLoader
from conduit.api.runner import SessionRunner
from conduit.api.tools import ToolBridge, ToolDispatcher
from conduit.config import Settings
from conduit.providers.credentials import CredentialResolver
from conduit.storage.database import Database
from conduit.storage.store import ConversationStore, SettingsStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()

    store = ConversationStore(database)
    settings_store = SettingsStore(database)
    credentials = CredentialResolver(settings, settings_store)

    dispatcher = ToolDispatcher(default_workspace=settings.workspace_dir)
    register_builtin_tools(dispatcher, enable_bash=settings.bash_enabled)
    bridge = ToolBridge(dispatcher, tool_timeout=settings.tool_timeout, default_workspace=settings.workspace_dir)

    loader = HistoryLoader(store)
    runner = SessionRunner(
        settings=settings,
        store=store,
        loader=loader,
        tools=dispatcher,
        bridge=bridge,
        credentials=credentials,
    )
    await runner.start()

    return {
        "database": database,
        "store": store,
        "settings_store": settings_store,
        "dispatcher": dispatcher,
        "loader": loader,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Conduit...")

    runner = components.get("runner")
    if runner:
        await runner.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Conduit shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        nonlocal components
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Conduit started: default_model=%s, max_iterations=%d, workspace=%s",
            settings.default_model,
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    from conduit.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        loader=_lazy_component(components, "loader"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Defers attribute access to a component created later in the lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Conduit on %s:%d", settings.host, settings.port)
    logger.info("Default model: %s", settings.default_model)
    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("@")[-1])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not (settings.anthropic_api_key or settings.openai_api_key or settings.google_api_key):
        logger.warning(
            "No vendor API key in the environment -- keys must come from the settings table "
            "or only local Ollama models will work"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
