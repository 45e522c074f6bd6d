"""Shared data models for the chat pipeline.

Everything here is request scoped except UsageRecord, which the usage
ledger persists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Root sentinel for the parent_id chain
NO_PARENT = "00000000-0000-0000-0000-000000000000"

# Content part types
PART_TEXT = "text"
PART_THINK = "think"
PART_TOOL_CALL = "tool_call"
PART_ERROR = "error"
PART_AGENT_UPDATE = "agent_update"

RunOptions = dict[str, Any]


@dataclass
class Attachment:
    """A file attached to a message."""

    file_id: str
    type: str = "image/png"  # MIME type
    width: int | None = None
    height: int | None = None
    embedded: bool = False
    file_identifier: str | None = None  # set when the provider already holds the file
    url: str | None = None

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image")

    @property
    def costs_image_tokens(self) -> bool:
        return self.is_image and not self.embedded and not self.file_identifier


@dataclass
class ContentPart:
    """One typed piece of a message body."""

    type: str  # text, think, tool_call, error, agent_update
    text: str = ""
    tool_call: dict[str, Any] | None = None
    tool_call_ids: list[str] | None = None
    agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.text:
            data["text"] = self.text
        if self.tool_call is not None:
            data["tool_call"] = self.tool_call
        if self.tool_call_ids:
            data["tool_call_ids"] = self.tool_call_ids
        if self.agent_id:
            data["agent_id"] = self.agent_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentPart:
        return cls(
            type=data.get("type", PART_TEXT),
            text=data.get("text", ""),
            tool_call=data.get("tool_call"),
            tool_call_ids=data.get("tool_call_ids"),
            agent_id=data.get("agent_id"),
        )


@dataclass
class Message:
    """A node in the conversation tree."""

    id: str
    parent_id: str | None
    role: str  # user, assistant, system, tool
    content_parts: list[ContentPart] = field(default_factory=list)
    token_count: int | None = None
    attachments: list[Attachment] = field(default_factory=list)
    conversation_id: str | None = None
    summary: str | None = None  # condensed summary of everything up to here
    summary_token_count: int | None = None
    name: str | None = None
    image_urls: list[dict[str, Any]] = field(default_factory=list)
    unfinished: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content_parts if p.type == PART_TEXT)

    @classmethod
    def from_text(cls, id: str, parent_id: str | None, role: str, text: str, **kwargs: Any) -> Message:
        return cls(
            id=id,
            parent_id=parent_id,
            role=role,
            content_parts=[ContentPart(type=PART_TEXT, text=text)],
            **kwargs,
        )


@dataclass
class ConversationThread:
    """Ordered root-to-leaf path through the message tree."""

    messages: list[Message] = field(default_factory=list)
    attachments: dict[str, list[Attachment]] = field(default_factory=dict)

    def attachments_for(self, message: Message) -> list[Attachment]:
        return self.attachments.get(message.id, message.attachments)

    def __len__(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class PromptPayload:
    """The bounded prompt handed to the request builder. Frozen once built."""

    entries: tuple[dict[str, Any], ...]
    instructions: dict[str, Any] | None
    token_count_map: dict[str, int]
    prompt_tokens: int
    messages: tuple[Message, ...]
    max_prompt_tokens: int
    instructions_tokens: int = 0  # share of prompt_tokens spent on instructions

    @property
    def remaining_context_tokens(self) -> int:
        return self.max_prompt_tokens - self.prompt_tokens

    def all_entries(self) -> list[dict[str, Any]]:
        """Instructions (if any) followed by the message entries."""
        if self.instructions is None:
            return [dict(e) for e in self.entries]
        return [dict(self.instructions), *(dict(e) for e in self.entries)]


@dataclass
class StreamState:
    """Accumulators owned by one coordinator for one turn."""

    visible_tokens: list[str] = field(default_factory=list)
    reasoning_tokens: list[str] = field(default_factory=list)
    role: str | None = None
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    final_message: dict[str, Any] | None = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    @property
    def visible_text(self) -> str:
        return "".join(self.visible_tokens)

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning_tokens)


@dataclass
class AgentTurn:
    """One agent's contribution within a sequence."""

    agent_id: str
    model_params: RunOptions
    instructions: str | None
    index_token_count_map: dict[int, int] = field(default_factory=dict)
    produced_content_parts: list[ContentPart] = field(default_factory=list)
    produced_messages: list[dict[str, Any]] = field(default_factory=list)
    steps: int = 0
    error: str | None = None


@dataclass
class UsageRecord:
    """One ledger row. Append-only."""

    input_tokens: int
    output_tokens: int
    context: str  # message, title, summary, reasoning
    model: str
    conversation_id: str | None = None
    user: str | None = None
    cache_write: int | None = None
    cache_read: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "context": self.context,
            "model": self.model,
            "conversation_id": self.conversation_id,
            "user": self.user,
            "cache_write": self.cache_write,
            "cache_read": self.cache_read,
        }


@dataclass
class UsageTotals:
    """Aggregate spend for one request."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ApiResponse:
    """Parsed response from a non-streaming completion call."""

    text: str
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Final result of one chat request."""

    text: str
    content_parts: list[ContentPart] = field(default_factory=list)
    usage: UsageTotals = field(default_factory=UsageTotals)
    finish_reason: str | None = None
    error: str | None = None

    @property
    def aborted(self) -> bool:
        return self.finish_reason == "aborted"
