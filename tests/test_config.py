"""Tests for Settings validation and component wiring."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from parley.chat.models import UsageRecord
from parley.config import Settings
from parley.events import USAGE_RECORDED, Event
from parley.main import build_app, create_components, shutdown_components, start_components
from parley.storage.stores import InMemoryMessageStore, SqlMessageStore


class TestSettings:
    def test_defaults(self, settings):
        assert settings.provider == "openai"
        assert settings.context_strategy == "discard"
        assert settings.agent_window_size == 5

    def test_prompt_plus_response_over_context(self, make_settings):
        with pytest.raises(ValidationError, match="must not exceed"):
            make_settings(max_context_tokens=1000, max_prompt_tokens=900, max_response_tokens=200)

    def test_response_fills_context(self, make_settings):
        with pytest.raises(ValidationError, match="leaves no room"):
            make_settings(max_context_tokens=1000, max_response_tokens=1000)

    def test_non_positive_limits(self, make_settings):
        with pytest.raises(ValidationError):
            make_settings(max_context_tokens=0)

    def test_unknown_strategy_rejected(self, make_settings):
        with pytest.raises(ValidationError):
            make_settings(context_strategy="compress")

    def test_db_url_from_parts(self, make_settings):
        settings = make_settings(DB_HOST="db", DB_PORT=6543, DB_USER="u", DB_PASSWORD="p", DB_NAME="n")
        assert settings.db_url == "postgresql+asyncpg://u:p@db:6543/n"

    def test_database_url_override(self, make_settings):
        assert make_settings(database_url="sqlite+aiosqlite://").db_url == "sqlite+aiosqlite://"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("PARLEY_MODEL", "gpt-4o")
        monkeypatch.setenv("PARLEY_AGENT_WINDOW_SIZE", "3")
        settings = Settings(_env_file=None)
        assert settings.model == "gpt-4o"
        assert settings.agent_window_size == 3

    def test_provider_specific_key(self, make_settings):
        settings = make_settings(api_key="generic", OPENAI_API_KEY="sk-openai")
        assert settings.key_for("openai") == "sk-openai"
        assert settings.key_for("anthropic") == "generic"
        assert settings.key_for("mistral") == "generic"


class TestComponents:
    @pytest.mark.asyncio
    async def test_memory_backend_wiring(self, make_settings):
        components = create_components(make_settings(storage_backend="memory"))
        assert components["database"] is None
        assert isinstance(components["store"], InMemoryMessageStore)

        await start_components(components)
        try:
            record = UsageRecord(input_tokens=3, output_tokens=1, context="message", model="gpt-4o")
            await components["bus"].emit(Event(type=USAGE_RECORDED, data={"record": record}))
            # Give bus time to process
            await asyncio.sleep(0.1)
        finally:
            await shutdown_components(components)

        assert components["ledger"].records == [record]

    @pytest.mark.asyncio
    async def test_sql_backend_wiring(self, make_settings, tmp_path):
        settings = make_settings(storage_backend="sql", database_url=f"sqlite+aiosqlite:///{tmp_path}/app.db")
        components = create_components(settings)
        assert isinstance(components["store"], SqlMessageStore)

        await start_components(components)
        try:
            assert await components["store"].get_messages("none") == []
        finally:
            await shutdown_components(components)

    def test_build_app_routes(self, make_settings):
        app = build_app(make_settings())
        paths = {route.path for route in app.routes}
        assert {"/chat", "/chat/stream", "/chat/{request_id}/abort", "/health"} <= paths
