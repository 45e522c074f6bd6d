"""Tests for sequential multi-agent execution and the per-agent tool loop."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from parley.chat.budget import TokenBudget, TokenBudgetManager
from parley.chat.cancellation import CancellationManager
from parley.chat.context import RunContext
from parley.chat.models import PART_AGENT_UPDATE, PART_ERROR, PART_TEXT, PART_TOOL_CALL, ConversationThread
from parley.chat.providers import PROVIDER_VARIANTS
from parley.chat.sequencer import (
    AgentConfig,
    AgentSequencer,
    build_window,
    get_buffer_string,
    resolve_recursion_limit,
)
from parley.errors import ProviderError

WEATHER_TOOL = {
    "type": "function",
    "function": {"name": "weather", "description": "Current weather", "parameters": {"type": "object"}},
}


def _ctx(settings) -> RunContext:
    return RunContext.create(
        settings,
        PROVIDER_VARIANTS["openai"],
        request_id="req-1",
        conversation_id="conv-1",
        model="gpt-4o",
    )


async def _payload(counter, messages, instructions=None):
    manager = TokenBudgetManager(TokenBudget(max_context_tokens=10000, max_response_tokens=1000), counter)
    return await manager.build_payload(ConversationThread(messages=messages), instructions=instructions)


class _Collector:
    def __init__(self) -> None:
        self.chunks: list[str] = []

    async def __call__(self, text: str) -> None:
        self.chunks.append(text)


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


class TestSequentialChain:
    @pytest.mark.asyncio
    async def test_followup_sees_buffer_of_human_input_and_prior_output(
        self, settings, counter, chain, fake_client, events
    ):
        """Agent 1 says "X"; agent 2's buffer renders the human input then "X"."""
        client = fake_client([events.text("X"), events.text("Y")])
        payload = await _payload(counter, chain("user:hello", "assistant:hi", "user:what now"))
        sequencer = AgentSequencer(client, _ctx(settings), counter)

        result = await sequencer.run(
            AgentConfig(id="a1"),
            payload,
            [AgentConfig(id="a2", name="Critic", instructions="Critique the answer")],
        )

        followup_messages = client.requests[1].body["messages"]
        assert followup_messages[0] == {"role": "system", "content": "Instructions:\nCritique the answer"}
        assert followup_messages[-1] == {"role": "user", "content": "Human: what now\nAI: X"}
        assert result.text == "X\n\nY"
        assert [p.type for p in result.content_parts] == [PART_TEXT, PART_AGENT_UPDATE, PART_TEXT]
        assert len(result.turns) == 2

    @pytest.mark.asyncio
    async def test_buffer_omits_primary_instructions_for_no_system_models(
        self, settings, counter, chain, fake_client, events
    ):
        client = fake_client([events.text("X"), events.text("Y")])
        manager = TokenBudgetManager(TokenBudget(max_context_tokens=10000, max_response_tokens=1000), counter)
        payload = await manager.build_payload(
            ConversationThread(messages=chain("user:what now")),
            instructions="Answer in French",
            instructions_as_user=True,
        )
        ctx = RunContext.create(
            settings,
            PROVIDER_VARIANTS["openai"],
            request_id="req-1",
            conversation_id="conv-1",
            model="o1-mini",
        )
        sequencer = AgentSequencer(client, ctx, counter)

        await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])

        primary_messages = client.requests[0].body["messages"]
        assert primary_messages[-1]["content"].startswith("Instructions:\nAnswer in French")
        followup_messages = client.requests[1].body["messages"]
        assert followup_messages[-1]["content"] == "Human: what now\nAI: X"

    @pytest.mark.asyncio
    async def test_followup_without_tools_never_sees_tool_messages(
        self, settings, counter, chain, fake_client, events
    ):
        client = fake_client([
            events.tool_call("c1", "weather", '{"city": "Oslo"}'),
            events.text("X"),
            events.text("Y"),
        ])
        dispatcher = AsyncMock()
        dispatcher.dispatch.return_value = ("sunny", False)
        payload = await _payload(counter, chain("user:weather in Oslo?"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, dispatcher=dispatcher)

        await sequencer.run(AgentConfig(id="a1", tools=[WEATHER_TOOL]), payload, [AgentConfig(id="a2")])

        followup = client.requests[2].body
        assert all(m["role"] != "tool" for m in followup["messages"])
        assert all("tool_calls" not in m for m in followup["messages"])
        assert "tools" not in followup
        buffer = followup["messages"][-1]["content"]
        assert buffer.startswith("Human: weather in Oslo?")
        assert buffer.endswith("AI: X")

    @pytest.mark.asyncio
    async def test_progress_matches_final_text(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.text("Fir", "st"), events.text("Sec", "ond")])
        sink = _Collector()
        payload = await _payload(counter, chain("user:go"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, sink=sink)
        result = await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])
        assert "".join(sink.chunks) == result.text == "First\n\nSecond"

    @pytest.mark.asyncio
    async def test_hide_sequential_outputs(self, make_settings, counter, chain, fake_client, events):
        client = fake_client([events.text("draft"), events.text("middle"), events.text("final")])
        sink = _Collector()
        payload = await _payload(counter, chain("user:go"))
        ctx = _ctx(make_settings(hide_sequential_outputs=True))
        sequencer = AgentSequencer(client, ctx, counter, sink=sink)

        result = await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2"), AgentConfig(id="a3")])

        assert result.text == "final"
        assert "".join(sink.chunks) == "final"
        assert len(result.all_content_parts) > len(result.content_parts)

    @pytest.mark.asyncio
    async def test_chain_disabled_runs_primary_only(self, make_settings, counter, chain, fake_client, events):
        client = fake_client([events.text("only"), events.text("unused")])
        payload = await _payload(counter, chain("user:go"))
        sequencer = AgentSequencer(client, _ctx(make_settings(agent_chain_enabled=False)), counter)
        result = await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])
        assert result.text == "only"
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_followup_window_is_bounded(self, make_settings, counter, chain, fake_client, events):
        history = [f"{'user' if i % 2 == 0 else 'assistant'}:turn {i}" for i in range(9)]
        client = fake_client([events.text("X"), events.text("Y")])
        payload = await _payload(counter, chain(*history))
        ctx = _ctx(make_settings(agent_window_size=3))
        sequencer = AgentSequencer(client, ctx, counter)
        await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])

        followup = client.requests[1].body["messages"]
        # window of 3 raw messages plus the buffer message
        assert len(followup) == 4
        assert [m["content"] for m in followup[:3]] == ["turn 5", "turn 6", "turn 7"]


# ---------------------------------------------------------------------------
# Failures and aborts
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_primary_failure_yields_error_part(self, settings, counter, chain, fake_client):
        client = fake_client([[ProviderError("provider down")]])
        payload = await _payload(counter, chain("user:go"))
        sequencer = AgentSequencer(client, _ctx(settings), counter)
        result = await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])

        assert result.error == "provider down"
        assert result.finish_reason == "error"
        assert result.content_parts[-1].type == PART_ERROR
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_followup_failure_continues_chain(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.text("X"), [ProviderError("flaky")], events.text("Z")])
        payload = await _payload(counter, chain("user:go"))
        sequencer = AgentSequencer(client, _ctx(settings), counter)
        result = await sequencer.run(
            AgentConfig(id="a1"), payload, [AgentConfig(id="a2"), AgentConfig(id="a3")]
        )

        assert result.turns[1].error == "flaky"
        assert result.error is None
        assert result.text == "X\n\nZ"
        assert len(client.requests) == 3

    @pytest.mark.asyncio
    async def test_abort_stops_chain(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.text("a", "b", "c"), events.text("never")])
        signal = CancellationManager()

        async def abort_on_first(text: str) -> None:
            signal.abort()

        payload = await _payload(counter, chain("user:go"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, signal=signal, sink=abort_on_first)
        result = await sequencer.run(AgentConfig(id="a1"), payload, [AgentConfig(id="a2")])

        assert result.aborted
        assert result.text == "a"
        assert len(client.requests) == 1


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_tool_result_fed_back(self, settings, counter, chain, fake_client, events):
        client = fake_client([
            events.tool_call("c1", "weather", '{"city": "Oslo"}', usage={"prompt_tokens": 20, "completion_tokens": 5}),
            events.text("It is sunny", usage={"prompt_tokens": 40, "completion_tokens": 4}),
        ])
        dispatcher = AsyncMock()
        dispatcher.dispatch.return_value = ("sunny", False)
        payload = await _payload(counter, chain("user:weather?"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, dispatcher=dispatcher)

        result = await sequencer.run(AgentConfig(id="a1", tools=[WEATHER_TOOL]), payload)

        dispatcher.dispatch.assert_awaited_once_with("weather", {"city": "Oslo"})
        assert client.requests[0].body["tools"] == [WEATHER_TOOL]
        second = client.requests[1].body["messages"]
        assert second[-2]["tool_calls"][0]["id"] == "c1"
        assert second[-1] == {"role": "tool", "tool_call_id": "c1", "content": "sunny"}

        tool_part = next(p for p in result.content_parts if p.type == PART_TOOL_CALL)
        assert tool_part.tool_call["output"] == "sunny"
        assert tool_part.tool_call["is_error"] is False
        assert result.text == "It is sunny"
        assert len(result.collected_usage) == 2

    @pytest.mark.asyncio
    async def test_dispatch_exception_becomes_error_result(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.tool_call("c1", "weather", "{}"), events.text("sorry")])
        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = RuntimeError("tool exploded")
        payload = await _payload(counter, chain("user:weather?"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, dispatcher=dispatcher)

        result = await sequencer.run(AgentConfig(id="a1", tools=[WEATHER_TOOL]), payload)

        tool_part = next(p for p in result.content_parts if p.type == PART_TOOL_CALL)
        assert tool_part.tool_call["is_error"] is True
        assert client.requests[1].body["messages"][-1]["content"] == "tool exploded"

    @pytest.mark.asyncio
    async def test_recursion_limit_caps_provider_calls(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.tool_call("c1", "weather", "{}"), events.text("unreached")])
        dispatcher = AsyncMock()
        payload = await _payload(counter, chain("user:weather?"))
        sequencer = AgentSequencer(client, _ctx(settings), counter, dispatcher=dispatcher)

        result = await sequencer.run(AgentConfig(id="a1", tools=[WEATHER_TOOL], recursion_limit=1), payload)

        assert len(client.requests) == 1
        dispatcher.dispatch.assert_not_awaited()
        assert result.finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_tools_ignored_without_dispatcher(self, settings, counter, chain, fake_client, events):
        client = fake_client([events.text("plain")])
        payload = await _payload(counter, chain("user:hi"))
        sequencer = AgentSequencer(client, _ctx(settings), counter)
        await sequencer.run(AgentConfig(id="a1", tools=[WEATHER_TOOL]), payload)
        assert "tools" not in client.requests[0].body


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_window_never_exceeds_size(self):
        entries = [{"role": "user", "content": str(i)} for i in range(7)]
        counts = {i: 10 + i for i in range(7)}
        window, window_counts = build_window(entries, counts, 5)
        assert [e["content"] for e in window] == ["2", "3", "4", "5", "6"]
        assert window_counts == {0: 12, 1: 13, 2: 14, 3: 15, 4: 16}

    def test_window_shorter_than_size(self):
        entries = [{"role": "user", "content": str(i)} for i in range(3)]
        window, window_counts = build_window(entries, {0: 1, 1: 2, 2: 3}, 5)
        assert len(window) == 3
        assert window_counts == {0: 1, 1: 2, 2: 3}

    def test_window_can_exclude_tool_traffic(self):
        entries = [
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "", "tool_calls": [{"id": "c"}]},
            {"role": "tool", "tool_call_id": "c", "content": "r"},
            {"role": "assistant", "content": "a"},
        ]
        window, counts = build_window(entries, {}, 5, include_tool_traffic=False)
        assert [e["role"] for e in window] == ["user", "assistant"]
        assert counts == {0: 0, 1: 0}

    def test_buffer_string(self):
        buffer = get_buffer_string([
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "tool", "content": "42"},
        ])
        assert buffer == "Human: hi\nAI: hello\nTool: 42"

    def test_recursion_limit_resolution(self):
        assert resolve_recursion_limit(None, 25, None) == 25
        assert resolve_recursion_limit(5, 25, None) == 5
        assert resolve_recursion_limit(30, 25, 10) == 10
