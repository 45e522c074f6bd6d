"""Shared fixtures: settings, a deterministic token counter, and a scripted
provider client that replays StreamEvent sequences without any network."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from parley.chat.client import StreamEvent
from parley.chat.models import ApiResponse, Message
from parley.chat.providers import PROVIDER_VARIANTS, ProviderVariant
from parley.chat.tokens import CharEstimateCounter
from parley.config import Settings
from parley.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted provider client
# ---------------------------------------------------------------------------


class FakeCompletionClient:
    """Replays one scripted event list per stream_completion() call.

    Script items are StreamEvents or exceptions (raised at that point).
    complete() pops ApiResponses (or exceptions) from ``completions``.
    """

    def __init__(
        self,
        scripts: list[list[Any]] | None = None,
        completions: list[Any] | None = None,
        variant: ProviderVariant | None = None,
    ) -> None:
        self.variant = variant or PROVIDER_VARIANTS["openai"]
        self.scripts = list(scripts or [])
        self.completions = list(completions or [])
        self.requests: list[Any] = []
        self.complete_requests: list[Any] = []
        self.complete_signals: list[Any] = []
        self.closed_streams = 0

    async def stream_completion(self, request, signal=None):
        self.requests.append(request)
        events = self.scripts.pop(0) if self.scripts else []
        try:
            yield StreamEvent(type="open")
            for event in events:
                if signal is not None and signal.aborted:
                    return
                if isinstance(event, Exception):
                    raise event
                yield event
        finally:
            self.closed_streams += 1

    async def complete(self, request, signal=None):
        self.complete_requests.append(request)
        self.complete_signals.append(signal)
        item = self.completions.pop(0) if self.completions else ApiResponse(text="Fake Title")
        if isinstance(item, Exception):
            raise item
        return item

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


def text_events(
    *chunks: str,
    finish: str | None = "stop",
    usage: dict[str, Any] | None = None,
    role: str | None = "assistant",
) -> list[StreamEvent]:
    """A well-formed OpenAI-style stream: role, content chunks, finish, done."""
    events = [StreamEvent(type="delta", role=role)] if role else []
    events.extend(StreamEvent(type="delta", text=c) for c in chunks)
    if finish is not None or usage is not None:
        events.append(StreamEvent(type="delta", finish_reason=finish, usage=usage))
    events.append(StreamEvent(type="done"))
    return events


def tool_call_events(call_id: str, name: str, arguments: str, usage: dict[str, Any] | None = None) -> list[StreamEvent]:
    return [
        StreamEvent(type="delta", role="assistant"),
        StreamEvent(
            type="delta",
            tool_call_deltas=[{"index": 0, "id": call_id, "name": name, "arguments": ""}],
        ),
        StreamEvent(type="delta", tool_call_deltas=[{"index": 0, "arguments": arguments}]),
        StreamEvent(type="delta", finish_reason="tool_calls", usage=usage),
        StreamEvent(type="done"),
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "api_key": "test-key",
        "stream_rate": 0,
        "storage_backend": "memory",
        # provider-specific keys from the environment would shadow api_key
        "OPENAI_API_KEY": "",
        "AZURE_OPENAI_API_KEY": "",
        "OPENROUTER_API_KEY": "",
        "ANTHROPIC_API_KEY": "",
        "ANTHROPIC_AUTH_TOKEN": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def make_settings():
    """Factory for Settings with test defaults (no .env, no stream delay)."""
    return _settings


@pytest.fixture
def settings() -> Settings:
    return _settings()


@pytest.fixture
def counter() -> CharEstimateCounter:
    """chars/4 counter: 4 characters per token, 0 for empty text."""
    return CharEstimateCounter()


@pytest.fixture
def fake_client():
    """Factory for FakeCompletionClient."""
    return FakeCompletionClient


@pytest.fixture
def events():
    """Namespace of stream script builders."""

    class _Events:
        text = staticmethod(text_events)
        tool_call = staticmethod(tool_call_events)

    return _Events


@pytest.fixture
def chain():
    """Build a linear message chain: chain("user:hi", "assistant:hello", ...)."""

    def _build(*entries: str, conversation_id: str = "conv-1", token_count: int | None = None) -> list[Message]:
        messages: list[Message] = []
        parent = None
        for i, entry in enumerate(entries, start=1):
            role, _, text = entry.partition(":")
            message = Message.from_text(
                id=f"m{i}",
                parent_id=parent,
                role=role,
                text=text,
                conversation_id=conversation_id,
                token_count=token_count,
            )
            messages.append(message)
            parent = message.id
        return messages

    return _build


@pytest_asyncio.fixture
async def db(tmp_path):
    """File-backed SQLite database with tables created."""
    database = Database(_settings(storage_backend="sql", database_url=f"sqlite+aiosqlite:///{tmp_path}/parley.db"))
    await database.create_all()
    yield database
    await database.disconnect()
