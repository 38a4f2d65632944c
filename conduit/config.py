"""Settings via pydantic-settings with CONDUIT_ env prefix.

Vendor credentials and DB connection fields use validation_alias to read
the same unprefixed env vars (ANTHROPIC_API_KEY, DB_PASSWORD, ...) that the
vendors' own tooling and docker-compose use.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUIT_", env_file=".env", populate_by_name=True)

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("conduit", validation_alias="DB_USER")
    db_password: str = Field("conduit_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("conduit", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; overrides the DB_* fields when set
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    workspace_dir: str = "/tmp/conduit-workspace"

    # Vendor credentials (environment first, then the settings table)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    google_api_key: str = Field("", validation_alias="GOOGLE_API_KEY")

    # Vendor endpoints
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ollama_base_url: str = Field("http://localhost:11434", validation_alias="OLLAMA_BASE_URL")

    # LLM
    default_model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 0.7

    # Session loop
    max_iterations: int = 10  # Max vendor round trips per session
    parallel_tools: bool = True
    tool_timeout: float = 120.0  # seconds per tool call
    bash_enabled: bool = True
    api_timeout_connect: float = 10.0  # seconds
    stream_read_timeout: float | None = None  # SSE is long-lived; None = no read timeout

    # Compaction
    compaction_enabled: bool = True
    compaction_strategy: Literal["smart", "token-based", "sliding-window"] = "smart"
    compaction_max_messages: int = 20  # sliding-window only
    autocompact_pct_override: float | None = None  # 0-100, % of effective window

    @model_validator(mode="after")
    def _validate_loop(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be > 0")
        if self.autocompact_pct_override is not None and not (
            0 < self.autocompact_pct_override <= 100
        ):
            raise ValueError("autocompact_pct_override must be in (0, 100]")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
