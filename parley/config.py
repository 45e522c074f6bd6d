"""Settings via pydantic-settings with PARLEY_ env prefix.

Provider credentials and DB connection fields use validation_alias to read
the unprefixed env vars (OPENAI_API_KEY, DB_PASSWORD, ...) that the rest of
the deployment already exports, so a single .env file drives everything.
"""

from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("parley", validation_alias="DB_USER")
    db_password: str = Field("parley_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("parley", validation_alias="DB_NAME")
    database_url: str = ""  # overrides the DB_* fields when set (e.g. sqlite+aiosqlite://)

    db_pool_size: int = 10
    db_max_overflow: int = 5
    storage_backend: Literal["sql", "memory"] = "sql"
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Provider credentials
    api_key: str = ""  # generic key, used when no provider-specific key is set
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    azure_api_key: str = Field("", validation_alias="AZURE_OPENAI_API_KEY")
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # Provider
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_base_url: str = ""  # empty -> the provider variant's default
    azure_api_version: str = "2024-10-21"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    add_params: dict[str, Any] = Field(default_factory=dict)
    drop_params: list[str] = Field(default_factory=list)

    # Token budget
    max_context_tokens: int = 128000
    max_prompt_tokens: int | None = None  # None -> max_context_tokens - max_response_tokens
    max_response_tokens: int = 4096
    context_strategy: Literal["discard", "summarize"] = "discard"
    image_detail: Literal["low", "high", "auto"] = "auto"
    summary_model: str = ""  # empty -> same model as the chat

    # Streaming
    stream_rate: int = 1  # ms pause between forwarded deltas

    # Titles
    title_enabled: bool = True
    title_model: str = ""  # empty -> same model as the chat
    title_max_tokens: int = 75

    # Agents
    agent_chain_enabled: bool = True
    agent_window_size: int = 5
    recursion_limit: int = 25
    max_recursion_limit: int | None = None
    hide_sequential_outputs: bool = False

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if self.max_context_tokens <= 0 or self.max_response_tokens <= 0:
            raise ValueError("max_context_tokens and max_response_tokens must be positive")
        if self.max_prompt_tokens is not None:
            total = self.max_prompt_tokens + self.max_response_tokens
            if total > self.max_context_tokens:
                raise ValueError(
                    f"max_prompt_tokens ({self.max_prompt_tokens}) + max_response_tokens "
                    f"({self.max_response_tokens}) must not exceed max_context_tokens "
                    f"({self.max_context_tokens})"
                )
        elif self.max_response_tokens >= self.max_context_tokens:
            raise ValueError(
                f"max_response_tokens ({self.max_response_tokens}) leaves no room for the "
                f"prompt within max_context_tokens ({self.max_context_tokens})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def key_for(self, provider: str) -> str:
        """Credential for a provider variant, falling back to the generic key."""
        specific = {
            "openai": self.openai_api_key,
            "azure": self.azure_api_key,
            "openrouter": self.openrouter_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(provider, "")
        return specific or self.api_key
