"""Chat runner. Executes one chat request end to end.

Assembles the thread, fits it into the token budget, runs the agent
sequence with streaming, records usage, persists both messages, and
kicks off title generation for new conversations. Every request owns a
CancellationManager; its cleanup handlers run exactly once, after the
title task when one is scheduled.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any, Protocol

from parley.chat.budget import TokenBudgetManager
from parley.chat.cancellation import CancellationManager, RequestHandle
from parley.chat.client import CompletionClient
from parley.chat.context import RunContext
from parley.chat.history import get_messages_for_conversation
from parley.chat.models import (
    NO_PARENT,
    Attachment,
    CompletionResult,
    Message,
    RunOptions,
)
from parley.chat.providers import is_no_system_model
from parley.chat.sequencer import AgentConfig, AgentSequencer, ToolDispatcher
from parley.chat.streaming import ProgressChannel, ProgressSink, add_space_if_needed
from parley.chat.title import ConversationSummarizer, TitleSummarizer
from parley.chat.tokens import TokenCounter, count_message_tokens
from parley.chat.usage import UsageRecorder, calculate_current_token_count
from parley.config import Settings
from parley.errors import AssemblyError
from parley.events import REQUEST_FINISHED, TITLE_GENERATED, Event, EventBus

logger = logging.getLogger(__name__)

_INSTRUCTIONS_KEY = "__instructions__"


# ------------------------------------------------------------------
# Collaborator protocols
# ------------------------------------------------------------------


class MessageStore(Protocol):
    """Persistence for conversation messages. save_message() upserts by id."""

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def save_message(self, message: Message) -> None: ...


@dataclass
class EncodedAttachments:
    files: list[Attachment] = field(default_factory=list)
    image_urls: list[dict[str, Any]] = field(default_factory=list)


class AttachmentEncoder(Protocol):
    async def encode(self, request_info: dict[str, Any], attachments: list[Attachment]) -> EncodedAttachments: ...


# ------------------------------------------------------------------
# Request / response
# ------------------------------------------------------------------


@dataclass
class ChatRequest:
    """One user turn."""

    text: str
    conversation_id: str | None = None
    parent_message_id: str | None = None
    user: str | None = None
    agent: AgentConfig | None = None
    followup_agents: list[AgentConfig] = field(default_factory=list)
    options: RunOptions = field(default_factory=dict)
    attachments: list[Attachment] = field(default_factory=list)
    instructions: str | None = None  # prompt prefix
    response_message_id: str | None = None  # continue this assistant message
    max_context_tokens: int | None = None
    request_id: str | None = None


@dataclass
class ChatResponse:
    request_id: str
    conversation_id: str
    request_message: Message
    response_message: Message
    result: CompletionResult
    title_task: asyncio.Task | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "conversation_id": self.conversation_id,
            "request_message_id": self.request_message.id,
            "response_message_id": self.response_message.id,
            "text": self.result.text,
            "content": [p.to_dict() for p in self.result.content_parts],
            "finish_reason": self.result.finish_reason,
            "error": self.result.error,
            "usage": {
                "input_tokens": self.result.usage.input_tokens,
                "output_tokens": self.result.usage.output_tokens,
            },
        }


@dataclass
class ProgressEvent:
    """An item of ChatRunner.stream(): created, delta, or final."""

    type: str
    request_id: str
    text: str = ""
    response: ChatResponse | None = None


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


class ChatRunner:
    """Per-request pipeline controller."""

    def __init__(
        self,
        settings: Settings,
        store: MessageStore,
        client: CompletionClient,
        counter: TokenCounter,
        *,
        bus: EventBus | None = None,
        recorder: UsageRecorder | None = None,
        dispatcher: ToolDispatcher | None = None,
        attachment_encoder: AttachmentEncoder | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client = client
        self._counter = counter
        self._bus = bus
        self._recorder = recorder or UsageRecorder(bus=bus)
        self._dispatcher = dispatcher
        self._encoder = attachment_encoder
        self._titles = TitleSummarizer(client, settings, self._recorder)
        self._active: dict[str, RequestHandle] = {}

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def create_handle(self, request_id: str | None = None) -> RequestHandle:
        handle = RequestHandle(CancellationManager(request_id))
        self._active[handle.request_id] = handle
        return handle

    def get_handle(self, request_id: str) -> RequestHandle | None:
        return self._active.get(request_id)

    def abort(self, request_id: str) -> bool:
        """Abort an in-flight request. False if unknown or already finished."""
        handle = self._active.get(request_id)
        return handle.abort() if handle is not None else False

    @property
    def active_requests(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        request: ChatRequest,
        on_progress: ProgressSink | None = None,
        handle: RequestHandle | None = None,
    ) -> ChatResponse:
        """Run one request to completion (or abort).

        ConfigError and AssemblyError propagate before any provider call.
        Provider failures are reported in the result, never raised.
        """
        handle = handle or self.create_handle(request.request_id)
        self._active.setdefault(handle.request_id, handle)
        manager = handle.manager
        manager.add_cleanup(lambda: self._active.pop(manager.request_id, None))

        handed_off = False
        try:
            response = await self._run(request, manager, on_progress)
            handed_off = response.title_task is not None
            return response
        finally:
            if not handed_off:
                await manager.run_cleanup()

    async def stream(
        self,
        request: ChatRequest,
        handle: RequestHandle | None = None,
    ) -> AsyncGenerator[ProgressEvent, None]:
        """Yield a ``created`` event, each visible delta, then the ``final`` event.

        Closing the generator early counts as a client disconnect.
        """
        handle = handle or self.create_handle(request.request_id)
        channel = ProgressChannel()

        async def _produce() -> ChatResponse:
            try:
                return await self.run(request, on_progress=channel.send, handle=handle)
            finally:
                channel.close()

        task = asyncio.create_task(_produce(), name=f"chat-{handle.request_id}")
        try:
            yield ProgressEvent(type="created", request_id=handle.request_id)
            async for text in channel:
                yield ProgressEvent(type="delta", request_id=handle.request_id, text=text)
            response = await task
            yield ProgressEvent(
                type="final",
                request_id=handle.request_id,
                text=response.result.text,
                response=response,
            )
        finally:
            if not task.done():
                handle.manager.on_disconnect()
                await asyncio.wait([task])
                if task.cancelled():
                    self._active.pop(handle.request_id, None)
                elif task.exception() is not None:
                    logger.warning("Request %s failed after disconnect: %s", handle.request_id, task.exception())

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: ChatRequest,
        manager: CancellationManager,
        on_progress: ProgressSink | None,
    ) -> ChatResponse:
        settings = self._settings
        is_new = not request.conversation_id or request.conversation_id == "new"
        conversation_id = str(uuid.uuid4()) if is_new else request.conversation_id
        parent_id = request.parent_message_id or NO_PARENT

        agent = request.agent or AgentConfig(id="default", model_parameters={"model": settings.model})
        options: RunOptions = {**agent.model_parameters, **request.options}
        model = options.get("model") or settings.model
        options["model"] = model
        ctx = RunContext.create(
            settings,
            self._client.variant,
            request_id=manager.request_id,
            conversation_id=conversation_id,
            user=request.user,
            model=model,
            max_context_tokens=request.max_context_tokens,
            is_new_conversation=is_new,
        )

        history = [] if is_new else await self._store.get_messages(conversation_id)
        seed_text = ""
        if request.response_message_id:
            user_message, seed_text = self._continued(history, request.response_message_id)
            response_id = request.response_message_id
            messages = history
        else:
            user_message = Message.from_text(
                id=str(uuid.uuid4()),
                parent_id=parent_id,
                role="user",
                text=request.text,
                conversation_id=conversation_id,
            )
            response_id = str(uuid.uuid4())
            messages = [*history, user_message]

        attachments_by_id = await self._encode_attachments(request, user_message, conversation_id)
        thread = get_messages_for_conversation(
            messages,
            user_message.id,
            summary=ctx.context_strategy == "summarize",
            attachments_by_id=attachments_by_id,
        )

        summarizer = None
        if ctx.context_strategy == "summarize":
            summarizer = ConversationSummarizer(
                self._client, settings, self._recorder, conversation_id, request.user, signal=manager
            )
        budget = TokenBudgetManager(
            ctx.budget,
            self._counter,
            strategy=ctx.context_strategy,
            encoding=ctx.encoding,
            image_detail=ctx.image_detail,
            summarizer=summarizer,
        )
        payload = await budget.build_payload(
            thread,
            instructions=request.instructions or agent.system_content(),
            instructions_as_user=is_no_system_model(model),
        )
        logger.info(
            "Request %s: %d messages, %d prompt tokens (%d remaining)",
            manager.request_id,
            len(payload.entries),
            payload.prompt_tokens,
            payload.remaining_context_tokens,
        )
        if not request.response_message_id:
            await self._store.save_message(user_message)

        sequencer = AgentSequencer(
            self._client,
            ctx,
            self._counter,
            signal=manager,
            dispatcher=self._dispatcher,
            sink=on_progress,
        )
        primary = dataclasses.replace(agent, model_parameters=options)
        result = await sequencer.run(primary, payload, request.followup_agents, seed_text=seed_text)

        usage = await self._recorder.record(
            result.collected_usage,
            model=model,
            context="message",
            conversation_id=conversation_id,
            user=request.user,
        )
        completion = CompletionResult(
            text=result.text,
            content_parts=result.content_parts,
            usage=usage,
            finish_reason=result.finish_reason,
            error=result.error,
        )

        if user_message.id in payload.token_count_map and usage.input_tokens:
            counts = dict(payload.token_count_map)
            if payload.instructions_tokens:
                counts[_INSTRUCTIONS_KEY] = payload.instructions_tokens
            user_message.token_count = calculate_current_token_count(
                counts, user_message.id, {"input_tokens": usage.input_tokens}
            )
        response_message = Message(
            id=response_id,
            parent_id=user_message.id,
            role="assistant",
            content_parts=completion.content_parts,
            token_count=count_message_tokens(
                {"role": "assistant", "content": completion.text}, self._counter, ctx.encoding
            ),
            conversation_id=conversation_id,
            unfinished=completion.aborted,
        )
        await self._store.save_message(user_message)
        await self._store.save_message(response_message)
        manager.mark_completed()

        if self._bus is not None:
            await self._bus.emit(Event(
                type=REQUEST_FINISHED,
                data={
                    "finish_reason": completion.finish_reason,
                    "error": completion.error,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                },
                conversation_id=conversation_id,
                request_id=manager.request_id,
            ))

        response = ChatResponse(
            request_id=manager.request_id,
            conversation_id=conversation_id,
            request_message=user_message,
            response_message=response_message,
            result=completion,
        )
        if (
            settings.title_enabled
            and is_new
            and parent_id == NO_PARENT
            and not completion.aborted
            and completion.error is None
        ):
            response.title_task = asyncio.create_task(
                self._title_then_cleanup(manager, request, completion.text, options, conversation_id),
                name=f"title-{conversation_id}",
            )
        return response

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _continued(history: list[Message], response_message_id: str) -> tuple[Message, str]:
        """(user message, seed text) for continuing an assistant message."""
        by_id = {m.id: m for m in history}
        existing = by_id.get(response_message_id)
        if existing is None or existing.parent_id not in by_id:
            raise AssemblyError(f"Cannot continue message {response_message_id}: not found in conversation")
        return by_id[existing.parent_id], add_space_if_needed(existing.text)

    async def _encode_attachments(
        self,
        request: ChatRequest,
        user_message: Message,
        conversation_id: str,
    ) -> dict[str, list[Attachment]]:
        if not request.attachments:
            return {}
        if self._encoder is None:
            return {user_message.id: list(request.attachments)}
        encoded = await self._encoder.encode(
            {"user": request.user, "conversation_id": conversation_id, "message_id": user_message.id},
            request.attachments,
        )
        user_message.image_urls = list(encoded.image_urls)
        user_message.attachments = list(encoded.files)
        return {user_message.id: list(encoded.files)}

    async def _title_then_cleanup(
        self,
        manager: CancellationManager,
        request: ChatRequest,
        response_text: str,
        options: RunOptions,
        conversation_id: str,
    ) -> str:
        try:
            title = await self._titles.generate(
                request.text,
                response_text,
                options=options,
                signal=manager,
                conversation_id=conversation_id,
                user=request.user,
            )
            if self._bus is not None:
                await self._bus.emit(Event(
                    type=TITLE_GENERATED,
                    data={"title": title},
                    conversation_id=conversation_id,
                    request_id=manager.request_id,
                ))
            return title
        finally:
            await manager.run_cleanup()
