"""Streaming response coordination.

A StreamCoordinator drives one provider stream for one agent turn:
INIT -> STREAMING -> COMPLETED | ABORTED | ERRORED. Visible deltas go to
the progress sink in provider order; reasoning deltas are held back and
rendered as a :::thinking block on the final text.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from parley.chat.client import StreamEvent
from parley.chat.models import (
    PART_TEXT,
    PART_THINK,
    PART_TOOL_CALL,
    ContentPart,
    StreamState,
)
from parley.chat.request_builder import ProviderRequest
from parley.errors import ProviderError, RecoverableStreamError

if TYPE_CHECKING:
    from parley.chat.cancellation import CancellationManager

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str], Awaitable[None]]

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
_THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>")

# Between text segments of consecutive calls or agents
SEGMENT_SEPARATOR = "\n\n"


class StreamStatus(StrEnum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class StreamSource(Protocol):
    def stream_completion(
        self,
        request: ProviderRequest,
        signal: CancellationManager | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


@dataclass
class TurnOutput:
    """Everything one streamed turn produced."""

    text: str
    visible_text: str = ""
    reasoning: str = ""
    content_parts: list[ContentPart] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    status: StreamStatus = StreamStatus.COMPLETED
    error: str | None = None


# ------------------------------------------------------------------
# Progress channel
# ------------------------------------------------------------------


class ProgressChannel:
    """Async iterator of visible deltas. The coordinator writes, the caller drains."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    async def send(self, text: str) -> None:
        if text and not self._closed:
            await self._queue.put(text)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> ProgressChannel:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


# ------------------------------------------------------------------
# Delta classification
# ------------------------------------------------------------------


class SplitStreamHandler:
    """Routes content between the visible and reasoning channels.

    Text between <think> and </think> (tags included) goes to the reasoning
    channel; everything else is visible.
    """

    def __init__(self, state: StreamState) -> None:
        self._state = state
        self._in_think = False

    def split(self, text: str) -> str:
        """Consume one content delta; return its visible portion."""
        visible: list[str] = []
        while text:
            if self._in_think:
                end = text.find(THINK_CLOSE)
                if end == -1:
                    self._state.reasoning_tokens.append(text)
                    break
                end += len(THINK_CLOSE)
                self._state.reasoning_tokens.append(text[:end])
                text = text[end:]
                self._in_think = False
            else:
                start = text.find(THINK_OPEN)
                if start == -1:
                    visible.append(text)
                    break
                visible.append(text[:start])
                self._state.reasoning_tokens.append(THINK_OPEN)
                text = text[start + len(THINK_OPEN):]
                self._in_think = True
        return "".join(visible)


def clean_reasoning(reasoning: str) -> str:
    match = _THINK_BLOCK.search(reasoning)
    if match:
        return match.group(1).strip()
    return reasoning.replace(THINK_OPEN, "").replace(THINK_CLOSE, "").strip()


def render_stream_text(visible: str, reasoning: str, context: str = "message") -> str:
    """Final text: a :::thinking block (if any reasoning) followed by the visible text.

    Title requests never carry the thinking block.
    """
    if not reasoning or context == "title":
        return visible
    cleaned = clean_reasoning(reasoning)
    if not cleaned or cleaned == visible.strip():
        return visible
    return f":::thinking\n{cleaned}\n:::\n{visible}"


def render_parts(parts: list[ContentPart]) -> str:
    """Final text for a list of content parts.

    Text parts are joined with SEGMENT_SEPARATOR; each think part renders as
    a :::thinking block in front of the text that follows it.
    """
    segments: list[str] = []
    pending: str | None = None
    for part in parts:
        if part.type == PART_THINK and part.text:
            pending = part.text
        elif part.type == PART_TEXT and part.text:
            text = part.text
            if pending:
                text = f":::thinking\n{pending}\n:::\n{text}"
                pending = None
            segments.append(text)
    if pending:
        segments.append(f":::thinking\n{pending}\n:::\n")
    return SEGMENT_SEPARATOR.join(segments)


def add_space_if_needed(text: str) -> str:
    return text if not text or text.endswith((" ", "\n")) else f"{text} "


# ------------------------------------------------------------------
# Coordinator
# ------------------------------------------------------------------


class StreamCoordinator:
    """Consumes one provider stream and produces a TurnOutput. Single use."""

    def __init__(
        self,
        client: StreamSource,
        *,
        stream_rate: float = 0.0,
        context: str = "message",
        sink: ProgressSink | None = None,
        seed_text: str = "",
    ) -> None:
        self._client = client
        self._stream_rate = stream_rate
        self._context = context
        self._sink = sink
        self._seed = seed_text
        self.state = StreamState()
        self.status = StreamStatus.INIT
        self._tool_acc: dict[int, dict[str, Any]] = {}

    async def run(
        self,
        request: ProviderRequest,
        signal: CancellationManager | None = None,
    ) -> TurnOutput:
        """Stream ``request`` to completion, abort, or error.

        Aborts return the partial text with finish reason ``aborted``. Known
        termination faults are recovered from the buffer. Any other provider
        error propagates as ProviderError unless text was already buffered.
        """
        if self.status is not StreamStatus.INIT:
            raise RuntimeError("StreamCoordinator instances are single use")
        if signal is not None and signal.aborted:
            return self._finish_aborted()

        splitter = SplitStreamHandler(self.state)
        if self._seed:
            await self._forward(self._seed)

        stream = self._client.stream_completion(request, signal)
        try:
            async for event in stream:
                if event.type == "open":
                    self.status = StreamStatus.STREAMING
                    continue
                if event.type == "error":
                    raise ProviderError(event.text)
                if event.type == "done":
                    break

                visible = self._apply(event, splitter)
                if visible:
                    await self._forward(visible)
                if signal is not None and signal.aborted:
                    break

            if signal is not None and signal.aborted:
                return self._finish_aborted()
            self._check_terminal()

        except RecoverableStreamError as e:
            if not self._has_buffer():
                self.status = StreamStatus.ERRORED
                raise ProviderError(str(e)) from e
            logger.warning("Recovered from stream fault (%s): %s", self._context, e)
            if self.state.finish_reason is None:
                self.state.finish_reason = "stop"

        except ProviderError as e:
            if signal is not None and signal.aborted:
                return self._finish_aborted()
            if not self._has_buffer():
                self.status = StreamStatus.ERRORED
                raise
            logger.warning("Provider error after partial output (%s): %s", self._context, e)
            self.status = StreamStatus.ERRORED
            self.state.finish_reason = "error"
            return self._output(error=str(e))

        finally:
            await stream.aclose()

        self.status = StreamStatus.COMPLETED
        return self._output()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(self, event: StreamEvent, splitter: SplitStreamHandler) -> str:
        state = self.state
        if self.status is StreamStatus.INIT:
            self.status = StreamStatus.STREAMING
        if event.role:
            state.role = event.role
        if event.finish_reason:
            state.finish_reason = event.finish_reason
        if event.usage:
            state.usage = {**(state.usage or {}), **event.usage}
        if event.message is not None:
            state.final_message = event.message
        if event.reasoning:
            state.reasoning_tokens.append(event.reasoning)
        for delta in event.tool_call_deltas:
            acc = self._tool_acc.setdefault(delta.get("index", 0), {"id": "", "name": "", "arguments": []})
            if delta.get("id"):
                acc["id"] = delta["id"]
            if delta.get("name"):
                acc["name"] = delta["name"]
            if delta.get("arguments"):
                acc["arguments"].append(delta["arguments"])
        return splitter.split(event.text) if event.text else ""

    async def _forward(self, text: str) -> None:
        self.state.visible_tokens.append(text)
        if self._sink is not None:
            await self._sink(text)
        if self._stream_rate:
            await asyncio.sleep(self._stream_rate)

    def _check_terminal(self) -> None:
        final = self.state.final_message
        if final is not None and final.get("role") != "assistant":
            raise RecoverableStreamError("Invalid final message: expected role=assistant")
        if self.state.role is None:
            raise RecoverableStreamError("stream ended without producing a message with role=assistant")
        if self.state.finish_reason is None:
            raise RecoverableStreamError("missing finish_reason")

    def _has_buffer(self) -> bool:
        return bool(self.state.visible_tokens or self.state.reasoning_tokens or self._tool_acc)

    def _finish_aborted(self) -> TurnOutput:
        self.status = StreamStatus.ABORTED
        self.state.finish_reason = "aborted"
        return self._output()

    def _tool_calls(self) -> list[dict[str, Any]]:
        return [
            {
                "id": acc["id"],
                "type": "function",
                "function": {"name": acc["name"], "arguments": "".join(acc["arguments"])},
            }
            for _, acc in sorted(self._tool_acc.items())
        ]

    def _output(self, error: str | None = None) -> TurnOutput:
        state = self.state
        visible = state.visible_text
        final = state.final_message or {}
        body = final.get("content") if isinstance(final.get("content"), str) else ""
        if body and body.strip():
            # prefer the terminal message body when the provider sends one
            visible = f"{self._seed}{body}" if self._seed and not body.startswith(self._seed) else body

        reasoning = state.reasoning_text
        tool_calls = self._tool_calls()
        parts: list[ContentPart] = []
        cleaned = clean_reasoning(reasoning) if reasoning else ""
        if cleaned and cleaned != visible.strip():
            parts.append(ContentPart(type=PART_THINK, text=cleaned))
        if visible:
            parts.append(ContentPart(type=PART_TEXT, text=visible))
        for call in tool_calls:
            parts.append(ContentPart(type=PART_TOOL_CALL, tool_call=call, tool_call_ids=[call["id"]]))

        return TurnOutput(
            text=render_stream_text(visible, reasoning, self._context),
            visible_text=visible,
            reasoning=cleaned,
            content_parts=parts,
            tool_calls=tool_calls,
            finish_reason=state.finish_reason,
            usage=state.usage,
            status=self.status,
            error=error,
        )
