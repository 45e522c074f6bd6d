"""Sequential multi-agent execution.

The primary agent answers first; each follow-up agent then runs on a
window of the most recent raw messages plus a buffer message, a
transcript rendering of the latest human input and everything earlier
agents produced. Turns never overlap and share one cancellation signal.

Each agent turn is itself a tool loop: stream a reply, dispatch any tool
calls, feed the results back, repeat until the model stops calling tools
or the recursion limit is reached.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from parley.chat.budget import INSTRUCTIONS_PREFIX, prepend_to_last_user
from parley.chat.context import RunContext
from parley.chat.models import (
    PART_AGENT_UPDATE,
    PART_ERROR,
    PART_TOOL_CALL,
    AgentTurn,
    ContentPart,
    PromptPayload,
    RunOptions,
)
from parley.chat.providers import is_no_system_model
from parley.chat.request_builder import build_request
from parley.chat.streaming import (
    SEGMENT_SEPARATOR,
    ProgressSink,
    StreamCoordinator,
    StreamSource,
    StreamStatus,
    render_parts,
)
from parley.chat.tokens import TokenCounter, count_message_tokens
from parley.chat.usage import normalize_usage
from parley.errors import ProviderError

if TYPE_CHECKING:
    from parley.chat.cancellation import CancellationManager

logger = logging.getLogger(__name__)

_BUFFER_PREFIXES = {"user": "Human", "assistant": "AI", "system": "System", "tool": "Tool"}


class ToolDispatcher(Protocol):
    """Executes a tool call. Returns (result_text, is_error)."""

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> tuple[str, bool]: ...


@dataclass
class AgentConfig:
    """One agent in a chain."""

    id: str
    name: str = ""
    model_parameters: RunOptions = field(default_factory=dict)
    instructions: str | None = None
    additional_instructions: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)  # OpenAI function tool specs
    recursion_limit: int | None = None
    hide_sequential_outputs: bool = False

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    @property
    def model(self) -> str | None:
        return self.model_parameters.get("model")

    def system_content(self, include_additional: bool = True) -> str:
        parts = [self.instructions or ""]
        if include_additional:
            parts.append(self.additional_instructions or "")
        return "\n\n".join(p.strip() for p in parts if p and p.strip())


@dataclass
class SequenceResult:
    """Merged output of a primary turn and its follow-ups."""

    content_parts: list[ContentPart]  # surfaced to the caller
    all_content_parts: list[ContentPart]
    turns: list[AgentTurn]
    collected_usage: list[dict[str, Any]]
    finish_reason: str | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return render_parts(self.content_parts)

    @property
    def aborted(self) -> bool:
        return self.finish_reason == "aborted"


def get_buffer_string(entries: Sequence[dict[str, Any]]) -> str:
    """Transcript rendering: ``Human: ...\\nAI: ...`` one line per entry."""
    lines = []
    for entry in entries:
        prefix = _BUFFER_PREFIXES.get(entry.get("role", ""), entry.get("role", "").title())
        content = entry.get("content") or ""
        if isinstance(content, list):
            content = "".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
        if not content and entry.get("tool_calls"):
            content = json.dumps([c.get("function", {}) for c in entry["tool_calls"]])
        lines.append(f"{prefix}: {content}")
    return "\n".join(lines)


def resolve_recursion_limit(agent_limit: int | None, default: int, maximum: int | None) -> int:
    limit = agent_limit or default
    if maximum is not None and limit > maximum:
        return maximum
    return limit


def is_tool_traffic(entry: dict[str, Any]) -> bool:
    return entry.get("role") == "tool" or bool(entry.get("tool_calls"))


def build_window(
    entries: Sequence[dict[str, Any]],
    index_token_count_map: dict[int, int],
    window_size: int,
    include_tool_traffic: bool = True,
) -> tuple[list[dict[str, Any]], dict[int, int]]:
    """Last ``window_size`` entries and their token counts, reindexed from 0.

    Positions are counted from the end, so the map stays aligned when the
    conversation is shorter than the window.
    """
    offset = max(0, len(entries) - window_size)
    window: list[dict[str, Any]] = []
    counts: dict[int, int] = {}
    for i in range(offset, len(entries)):
        entry = entries[i]
        if not include_tool_traffic and is_tool_traffic(entry):
            continue
        counts[len(window)] = index_token_count_map.get(i, 0)
        window.append(entry)
    return window, counts


class _SegmentedSink:
    """Forwards deltas, inserting SEGMENT_SEPARATOR between segments."""

    def __init__(self, sink: ProgressSink) -> None:
        self._sink = sink
        self._emitted = False
        self._new_segment = False

    def new_segment(self) -> None:
        self._new_segment = True

    async def __call__(self, text: str) -> None:
        if self._new_segment and self._emitted:
            text = f"{SEGMENT_SEPARATOR}{text}"
        self._new_segment = False
        self._emitted = True
        await self._sink(text)


class AgentSequencer:
    """Runs a primary agent and its follow-ups strictly in order."""

    def __init__(
        self,
        client: StreamSource,
        ctx: RunContext,
        counter: TokenCounter,
        *,
        signal: CancellationManager | None = None,
        dispatcher: ToolDispatcher | None = None,
        sink: ProgressSink | None = None,
    ) -> None:
        self._client = client
        self._ctx = ctx
        self._counter = counter
        self._signal = signal
        self._dispatcher = dispatcher
        self._sink = _SegmentedSink(sink) if sink is not None else None
        self._content_parts: list[ContentPart] = []
        self.collected_usage: list[dict[str, Any]] = []

    @property
    def _aborted(self) -> bool:
        return self._signal is not None and self._signal.aborted

    async def run(
        self,
        primary: AgentConfig,
        payload: PromptPayload,
        followups: Sequence[AgentConfig] = (),
        seed_text: str = "",
    ) -> SequenceResult:
        ctx = self._ctx
        hide = ctx.hide_sequential_outputs or primary.hide_sequential_outputs
        chain = list(followups) if ctx.chain_enabled else []
        entries = list(payload.entries)
        index_map = {i: m.token_count or 0 for i, m in enumerate(payload.messages)}

        turns: list[AgentTurn] = []
        finish_reason: str | None = None
        error: str | None = None
        final_start = 0

        primary_turn = AgentTurn(
            agent_id=primary.id,
            model_params=dict(primary.model_parameters),
            instructions=(payload.instructions or {}).get("content"),
            index_token_count_map=index_map,
        )
        turns.append(primary_turn)
        try:
            finish_reason = await self._run_agent(
                primary,
                payload.all_entries(),
                primary_turn,
                forward=not (hide and chain),
                seed_text=seed_text,
            )
        except ProviderError as e:
            finish_reason = "error"
            if not self._aborted:
                logger.error("Primary agent %s failed: %s", primary.id, e)
                error = str(e)
                primary_turn.error = error
                self._content_parts.append(ContentPart(type=PART_ERROR, text=str(e), agent_id=primary.id))
        error = error or primary_turn.error

        if chain and error is None and not self._aborted:
            # stored text, not the entry: no-system models carry folded instructions there
            latest = {"role": "user", "content": payload.messages[-1].text if payload.messages else ""}
            window, window_counts = build_window(entries[:-1], index_map, ctx.window_size)
            run_messages: list[dict[str, Any]] = []
            previous = primary_turn

            for i, agent in enumerate(chain, start=1):
                if self._aborted:
                    break
                is_last = i == len(chain)
                if hide and is_last:
                    final_start = len(self._content_parts)

                self._content_parts.append(ContentPart(type=PART_AGENT_UPDATE, agent_id=agent.id, text=agent.name))
                run_messages.extend(previous.produced_messages)
                turn, context_entries = self._followup_turn(
                    agent, latest, window, window_counts, run_messages,
                )
                turns.append(turn)
                try:
                    finish_reason = await self._run_agent(
                        agent,
                        context_entries,
                        turn,
                        forward=not hide or is_last,
                    )
                except ProviderError as e:
                    logger.error("Follow-up agent %s failed, continuing chain: %s", agent.id, e)
                    turn.error = str(e)
                previous = turn

        if self._aborted:
            finish_reason = "aborted"

        all_parts = list(self._content_parts)
        if hide and chain:
            surfaced = [
                part for i, part in enumerate(all_parts)
                if i >= final_start or part.type == PART_TOOL_CALL or part.tool_call_ids
            ]
        else:
            surfaced = all_parts

        return SequenceResult(
            content_parts=surfaced,
            all_content_parts=all_parts,
            turns=turns,
            collected_usage=self.collected_usage,
            finish_reason=finish_reason,
            error=error,
        )

    # ------------------------------------------------------------------
    # Follow-up context
    # ------------------------------------------------------------------

    def _followup_turn(
        self,
        agent: AgentConfig,
        latest: dict[str, Any],
        window: list[dict[str, Any]],
        window_counts: dict[int, int],
        run_messages: list[dict[str, Any]],
    ) -> tuple[AgentTurn, list[dict[str, Any]]]:
        """Window + buffer message for one follow-up agent."""
        if agent.has_tools:
            context_entries = list(window)
            counts = dict(window_counts)
        else:
            context_entries, counts = build_window(window, window_counts, len(window), include_tool_traffic=False)

        buffer = {
            "role": "user",
            "content": get_buffer_string([{"role": "user", "content": latest.get("content", "")}, *run_messages]),
        }
        counts[len(context_entries)] = count_message_tokens(buffer, self._counter, self._ctx.encoding)
        context_entries.append(buffer)

        instructions = agent.system_content()
        model = agent.model or self._ctx.model
        if instructions:
            content = f"{INSTRUCTIONS_PREFIX}{instructions}"
            if is_no_system_model(model):
                prepend_to_last_user(context_entries, content)
            else:
                context_entries.insert(0, {"role": "system", "content": content})

        turn = AgentTurn(
            agent_id=agent.id,
            model_params=dict(agent.model_parameters),
            instructions=instructions or None,
            index_token_count_map=counts,
        )
        return turn, context_entries

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------

    async def _run_agent(
        self,
        agent: AgentConfig,
        entries: list[dict[str, Any]],
        turn: AgentTurn,
        forward: bool = True,
        seed_text: str = "",
    ) -> str | None:
        """Run one agent turn until it stops calling tools. Returns the finish reason.

        The recursion limit caps the number of provider calls in the turn.
        """
        ctx = self._ctx
        limit = resolve_recursion_limit(agent.recursion_limit, ctx.recursion_limit, ctx.max_recursion_limit)
        messages = [dict(e) for e in entries]
        options: RunOptions = dict(agent.model_parameters)
        options.setdefault("model", ctx.model)
        options.setdefault("max_output_tokens", ctx.budget.max_response_tokens)
        if agent.has_tools and self._dispatcher is not None:
            options["tools"] = agent.tools

        finish_reason: str | None = None
        while True:
            if self._aborted:
                return "aborted"
            request = build_request(messages, options, ctx.variant, ctx.overrides)
            sink = None
            if forward and self._sink is not None:
                self._sink.new_segment()
                sink = self._sink
            coordinator = StreamCoordinator(
                self._client,
                stream_rate=ctx.stream_rate,
                sink=sink,
                seed_text=seed_text if turn.steps == 0 else "",
            )
            output = await coordinator.run(request, self._signal)
            turn.steps += 1
            finish_reason = output.finish_reason

            if output.usage:
                self.collected_usage.append(normalize_usage(output.usage, options["model"]))

            parts = output.content_parts
            for part in parts:
                part.agent_id = agent.id
            turn.produced_content_parts.extend(parts)
            self._content_parts.extend(parts)

            if output.status is StreamStatus.ABORTED:
                return "aborted"
            if output.status is StreamStatus.ERRORED:
                turn.error = output.error
                self._content_parts.append(ContentPart(type=PART_ERROR, text=output.error or "", agent_id=agent.id))
                return finish_reason
            if not output.tool_calls or self._dispatcher is None:
                turn.produced_messages.append({"role": "assistant", "content": output.visible_text})
                return finish_reason

            assistant = {"role": "assistant", "content": output.visible_text, "tool_calls": output.tool_calls}
            messages.append(assistant)
            turn.produced_messages.append(assistant)
            if turn.steps >= limit:
                logger.warning("Agent %s reached recursion limit %d", agent.id, limit)
                return finish_reason

            tool_parts = {p.tool_call["id"]: p for p in parts if p.type == PART_TOOL_CALL and p.tool_call}
            for call in output.tool_calls:
                name = call["function"]["name"]
                try:
                    arguments = json.loads(call["function"]["arguments"] or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                start_time = time.monotonic()
                try:
                    result_text, is_error = await self._dispatcher.dispatch(name, arguments)
                except Exception as e:
                    result_text, is_error = str(e), True
                duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.debug("Tool %s finished in %dms (error=%s)", name, duration_ms, is_error)

                part = tool_parts.get(call["id"])
                if part is not None:
                    part.tool_call = {**part.tool_call, "output": result_text, "is_error": is_error}
                tool_entry = {"role": "tool", "tool_call_id": call["id"], "content": result_text}
                messages.append(tool_entry)
                turn.produced_messages.append(tool_entry)
