"""Token budget enforcement: fit a conversation thread into the prompt window.

Two strategies, selected by ``context_strategy``:
  discard:   keep the newest messages that fit; older ones are dropped.
  summarize: collapse the dropped span into one synthetic summary message.

Either way, if the newest message alone overflows it is chunked into
head + marker + tail so at least one entry is always sent.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from parley.chat.models import (
    PART_TEXT,
    ContentPart,
    ConversationThread,
    Message,
    PromptPayload,
)
from parley.chat.tokens import (
    DEFAULT_ENCODING,
    TokenCounter,
    count_message_tokens,
    image_token_cost,
)
from parley.config import Settings
from parley.errors import ConfigError

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[truncated]...\n"
INSTRUCTIONS_PREFIX = "Instructions:\n"
SUMMARY_PREFIX = "Summary of the earlier conversation:\n"

_THINKING_BLOCK = re.compile(r":::thinking[\s\S]*?:::\n?")


class Summarizer(Protocol):
    """Condenses dropped history into a short text."""

    async def summarize(
        self,
        entries: list[dict[str, Any]],
        previous_summary: str | None = None,
    ) -> str | None: ...


@dataclass(frozen=True)
class TokenBudget:
    """Validated token limits. ``max_prompt_tokens`` defaults to context - response."""

    max_context_tokens: int
    max_response_tokens: int
    max_prompt_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_context_tokens <= 0 or self.max_response_tokens <= 0:
            raise ConfigError("Token limits must be positive")
        if self.max_prompt_tokens is None:
            object.__setattr__(self, "max_prompt_tokens", self.max_context_tokens - self.max_response_tokens)
        if self.max_prompt_tokens <= 0:
            raise ConfigError(
                f"max_response_tokens ({self.max_response_tokens}) leaves no room for the prompt "
                f"within max_context_tokens ({self.max_context_tokens})"
            )
        if self.max_prompt_tokens + self.max_response_tokens > self.max_context_tokens:
            raise ConfigError(
                f"max_prompt_tokens ({self.max_prompt_tokens}) + max_response_tokens "
                f"({self.max_response_tokens}) must be less than or equal to "
                f"max_context_tokens ({self.max_context_tokens})"
            )

    @classmethod
    def from_settings(cls, settings: Settings, max_context_tokens: int | None = None) -> TokenBudget:
        return cls(
            max_context_tokens=max_context_tokens or settings.max_context_tokens,
            max_response_tokens=settings.max_response_tokens,
            max_prompt_tokens=settings.max_prompt_tokens,
        )


# ------------------------------------------------------------------
# Message formatting
# ------------------------------------------------------------------


def strip_thinking_blocks(text: str) -> str:
    """Remove rendered :::thinking blocks from a prior assistant reply."""
    return _THINKING_BLOCK.sub("", text).strip()


def format_message(message: Message) -> dict[str, Any]:
    """Prompt entry for one stored message."""
    text = message.text
    if message.role == "assistant":
        text = strip_thinking_blocks(text)

    entry: dict[str, Any] = {"role": message.role}
    if message.image_urls and message.role == "user":
        entry["content"] = [{"type": "text", "text": text}, *message.image_urls]
    else:
        entry["content"] = text
    if message.name:
        entry["name"] = message.name
    return entry


def instructions_entry(instructions: str) -> dict[str, Any]:
    return {"role": "system", "content": f"{INSTRUCTIONS_PREFIX}{instructions.strip()}"}


def prepend_to_last_user(entries: list[dict[str, Any]], text: str) -> None:
    """Fold instructions into the newest user entry (models without a system role)."""
    for entry in reversed(entries):
        if entry.get("role") != "user":
            continue
        content = entry.get("content")
        if isinstance(content, list):
            entry["content"] = [{"type": "text", "text": text}, *content]
        else:
            entry["content"] = f"{text}\n\n{content or ''}".rstrip()
        return
    entries.append({"role": "user", "content": text})


# ------------------------------------------------------------------
# Budget manager
# ------------------------------------------------------------------


class TokenBudgetManager:
    """Builds a PromptPayload whose token total never exceeds max_prompt_tokens."""

    def __init__(
        self,
        budget: TokenBudget,
        counter: TokenCounter,
        *,
        strategy: str = "discard",
        encoding: str = DEFAULT_ENCODING,
        image_detail: str = "auto",
        summarizer: Summarizer | None = None,
    ) -> None:
        if strategy not in ("discard", "summarize"):
            raise ConfigError(f"Unknown context strategy: {strategy}")
        self.budget = budget
        self._counter = counter
        self._strategy = strategy
        self._encoding = encoding
        self._image_detail = image_detail
        self._summarizer = summarizer
        self._charged: set[str] = set()

    def count_entry(self, entry: dict[str, Any]) -> int:
        return count_message_tokens(entry, self._counter, self._encoding)

    def fill_token_counts(self, thread: ConversationThread, entries: list[dict[str, Any]]) -> None:
        """Backfill token_count on messages that lack one.

        Image attachments are charged on freshly counted messages, once per
        message id.
        """
        for message, entry in zip(thread.messages, entries):
            if message.token_count is not None:
                continue
            message.token_count = self.count_entry(entry)
            if message.id in self._charged:
                continue
            images = [a for a in thread.attachments_for(message) if a.costs_image_tokens]
            if images:
                message.token_count += sum(
                    image_token_cost(a.width, a.height, self._image_detail) for a in images
                )
                self._charged.add(message.id)

    async def build_payload(
        self,
        thread: ConversationThread,
        instructions: str | None = None,
        instructions_as_user: bool = False,
    ) -> PromptPayload:
        max_prompt = self.budget.max_prompt_tokens
        entries = [format_message(m) for m in thread.messages]
        self.fill_token_counts(thread, entries)

        system_entry: dict[str, Any] | None = None
        reserved = 0
        if instructions and instructions.strip():
            system_entry = instructions_entry(instructions)
            reserved = self.count_entry(system_entry)
        if reserved >= max_prompt:
            raise ConfigError(
                f"Instructions ({reserved} tokens) exceed max_prompt_tokens ({max_prompt})"
            )

        available = max_prompt - reserved
        kept, dropped, used = self._fit_newest(thread.messages, available)

        if not kept and thread.messages:
            newest = thread.messages[-1]
            logger.warning(
                "Newest message %s (%d tokens) exceeds prompt budget %d, truncating",
                newest.id,
                newest.token_count or 0,
                available,
            )
            truncated = self._truncate_to_fit(newest, available)
            kept, dropped, used = [truncated], list(thread.messages[:-1]), truncated.token_count or 0

        if dropped:
            logger.info("Context window overflow: dropping %d oldest messages", len(dropped))
            if self._strategy == "summarize" and self._summarizer is not None:
                summary = await self._summarize(dropped, available - used)
                if summary is not None:
                    kept.insert(0, summary)
                    used += summary.token_count or 0

        kept_entries = [self._entry_for(m) for m in kept]
        if system_entry is not None and instructions_as_user:
            prepend_to_last_user(kept_entries, system_entry["content"])
            system_entry = None
            # folding changes the user entry, so recount
            folded = sum(self.count_entry(e) for e in kept_entries)
            reserved = max(0, folded - used)
            used = folded - reserved

        return PromptPayload(
            entries=tuple(kept_entries),
            instructions=system_entry,
            token_count_map={m.id: m.token_count or 0 for m in kept},
            prompt_tokens=used + reserved,
            messages=tuple(kept),
            max_prompt_tokens=max_prompt,
            instructions_tokens=reserved,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _entry_for(self, message: Message) -> dict[str, Any]:
        return format_message(message)

    @staticmethod
    def _fit_newest(messages: list[Message], available: int) -> tuple[list[Message], list[Message], int]:
        """Newest-first accumulation. Returns (kept, dropped, tokens_used)."""
        kept: list[Message] = []
        used = 0
        cut = len(messages)
        for i in range(len(messages) - 1, -1, -1):
            tokens = messages[i].token_count or 0
            if used + tokens > available:
                break
            used += tokens
            kept.append(messages[i])
            cut = i
        kept.reverse()
        return kept, list(messages[:cut]) if kept else list(messages), used

    def _truncate_to_fit(self, message: Message, limit: int) -> Message:
        """Reduce a message to head + marker + tail within ``limit`` tokens."""
        text = message.text
        total = max(1, self._counter.count(text, self._encoding))
        tokens_per_char = total / max(1, len(text))
        chars = min(len(text) // 2, int((limit / 3) / tokens_per_char))

        while chars > 0:
            reduced = f"{text[:chars]}{TRUNCATION_MARKER}{text[-chars:]}"
            candidate = dataclasses.replace(
                message,
                content_parts=[ContentPart(type=PART_TEXT, text=reduced)],
                image_urls=[],
                token_count=None,
            )
            tokens = self.count_entry(format_message(candidate))
            if tokens <= limit:
                candidate.token_count = tokens
                return candidate
            chars = min(chars - 1, int(chars * 0.75))

        raise ConfigError(
            f"max_prompt_tokens leaves only {limit} tokens, too few to send message {message.id}"
        )

    async def _summarize(self, dropped: list[Message], room: int) -> Message | None:
        """Synthetic system message condensing ``dropped``, or None on failure."""
        previous = None
        if dropped and dropped[0].role == "system" and dropped[0].summary:
            previous = dropped[0].summary
            dropped = dropped[1:]
        try:
            text = await self._summarizer.summarize([format_message(m) for m in dropped], previous)
        except Exception:
            logger.exception("Summarization failed, falling back to discard")
            return None
        if not text:
            return None

        content = f"{SUMMARY_PREFIX}{text.strip()}"
        summary = Message.from_text(
            id=f"summary-{uuid.uuid4()}",
            parent_id=None,
            role="system",
            text=content,
            summary=text.strip(),
        )
        summary.token_count = self.count_entry(format_message(summary))
        summary.summary_token_count = summary.token_count
        if summary.token_count > room:
            logger.warning(
                "Summary (%d tokens) does not fit remaining budget %d, discarding it",
                summary.token_count,
                room,
            )
            return None
        return summary
