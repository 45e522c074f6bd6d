"""Message history assembly: linearize one branch of the conversation tree."""

from __future__ import annotations

import dataclasses
import logging

from parley.chat.models import (
    NO_PARENT,
    PART_TEXT,
    Attachment,
    ContentPart,
    ConversationThread,
    Message,
)
from parley.errors import AssemblyError

logger = logging.getLogger(__name__)

_EMPTY_TARGETS = frozenset({"", "new", NO_PARENT})


def get_messages_for_conversation(
    messages: list[Message],
    parent_message_id: str | None,
    summary: bool = False,
    attachments_by_id: dict[str, list[Attachment]] | None = None,
) -> ConversationThread:
    """Walk parent links from ``parent_message_id`` back to the root.

    Returns the branch in chronological order. With ``summary=True`` the walk
    stops at the newest message carrying a stored summary; that message is
    replaced by a system message holding the summary text, standing in for
    everything older.

    Raises AssemblyError when the leaf is missing, a parent link points at a
    message that does not exist, or the chain loops.
    """
    if parent_message_id is None or parent_message_id in _EMPTY_TARGETS:
        return ConversationThread(attachments=dict(attachments_by_id or {}))

    by_id = {m.id: m for m in messages}
    if parent_message_id not in by_id:
        raise AssemblyError(f"Message {parent_message_id} not found in conversation")

    ordered: list[Message] = []
    visited: set[str] = set()
    current: str | None = parent_message_id
    max_steps = len(messages)

    while current and current != NO_PARENT:
        if current in visited or len(visited) >= max_steps:
            raise AssemblyError(f"Cycle detected in message thread at {current}")
        message = by_id.get(current)
        if message is None:
            raise AssemblyError(f"Broken message thread: parent {current} not found")
        visited.add(current)

        if summary and message.summary:
            ordered.append(_summary_stand_in(message))
            break

        ordered.append(message)
        current = message.parent_id

    ordered.reverse()
    logger.debug("Assembled thread of %d messages ending at %s", len(ordered), parent_message_id)
    return ConversationThread(messages=ordered, attachments=dict(attachments_by_id or {}))


def _summary_stand_in(message: Message) -> Message:
    return dataclasses.replace(
        message,
        role="system",
        content_parts=[ContentPart(type=PART_TEXT, text=message.summary or "")],
        token_count=message.summary_token_count,
        attachments=[],
        image_urls=[],
    )
