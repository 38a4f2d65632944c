"""Credential resolution: environment-backed settings first, then the settings table."""

from __future__ import annotations

import logging
from typing import Protocol

from conduit.config import Settings

logger = logging.getLogger(__name__)

# Settings field holding each vendor's env-sourced key
_ENV_FIELDS: dict[str, str] = {
    "anthropicApiKey": "anthropic_api_key",
    "openaiApiKey": "openai_api_key",
    "googleApiKey": "google_api_key",
}


class SettingsReader(Protocol):
    async def get_value(self, key: str) -> object | None: ...


class CredentialResolver:
    """Resolves vendor keys. Injected into sessions; holds no global state."""

    def __init__(self, settings: Settings, settings_store: SettingsReader | None = None) -> None:
        self._settings = settings
        self._store = settings_store

    async def resolve(self, credential_key: str) -> str | None:
        env_field = _ENV_FIELDS.get(credential_key)
        if env_field:
            value = getattr(self._settings, env_field, "")
            if value:
                return value

        if self._store is None:
            return None
        try:
            stored = await self._store.get_value(credential_key)
        except Exception:
            logger.warning("Settings lookup failed for %s", credential_key, exc_info=True)
            return None
        if isinstance(stored, str) and stored:
            return stored
        return None


class StaticCredentials:
    """Fixed key map, for tests and embedding."""

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._keys = keys or {}

    async def resolve(self, credential_key: str) -> str | None:
        return self._keys.get(credential_key) or None
