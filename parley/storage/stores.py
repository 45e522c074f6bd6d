"""Message store and usage ledger implementations.

The SQL variants persist through Database sessions; the in-memory variants
back tests and embedded use. Every method accepts an optional session so
callers can group writes into one transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parley.chat.models import Attachment, ContentPart, Message, UsageRecord
from parley.events import Event
from parley.storage.database import Database
from parley.storage.models import MessageRow, UsageTransaction

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------


def _attachment_to_dict(attachment: Attachment) -> dict[str, Any]:
    return {
        "file_id": attachment.file_id,
        "type": attachment.type,
        "width": attachment.width,
        "height": attachment.height,
        "embedded": attachment.embedded,
        "file_identifier": attachment.file_identifier,
        "url": attachment.url,
    }


def _row_to_message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        parent_id=row.parent_id,
        role=row.role,
        content_parts=[ContentPart.from_dict(p) for p in row.content or []],
        token_count=row.token_count,
        attachments=[Attachment(**a) for a in row.attachments or []],
        conversation_id=row.conversation_id,
        summary=row.summary,
        summary_token_count=row.summary_token_count,
        unfinished=row.unfinished,
    )


def _apply_message(row: MessageRow, message: Message) -> None:
    row.conversation_id = message.conversation_id or ""
    row.parent_id = message.parent_id
    row.role = message.role
    row.content = [p.to_dict() for p in message.content_parts]
    row.token_count = message.token_count
    row.summary = message.summary
    row.summary_token_count = message.summary_token_count
    row.attachments = [_attachment_to_dict(a) for a in message.attachments]
    row.unfinished = message.unfinished


# ------------------------------------------------------------------
# SQL
# ------------------------------------------------------------------


class SqlMessageStore:
    def __init__(self, database: Database) -> None:
        self.db = database

    async def get_messages(self, conversation_id: str, session: AsyncSession | None = None) -> list[Message]:
        if session is None:
            async with self.db.session() as session:
                return await self._get_messages(conversation_id, session)
        return await self._get_messages(conversation_id, session)

    async def _get_messages(self, conversation_id: str, session: AsyncSession) -> list[Message]:
        result = await session.execute(
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.created_at)
        )
        return [_row_to_message(row) for row in result.scalars()]

    async def save_message(self, message: Message, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._save_message(message, session)
                await session.commit()
                return
        await self._save_message(message, session)

    async def _save_message(self, message: Message, session: AsyncSession) -> None:
        row = await session.get(MessageRow, message.id)
        if row is None:
            row = MessageRow(id=message.id, created_at=message.created_at)
            session.add(row)
        _apply_message(row, message)
        await session.flush()


class SqlUsageLedger:
    def __init__(self, database: Database) -> None:
        self.db = database

    async def append(self, record: UsageRecord, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._append(record, session)
                await session.commit()
                return
        await self._append(record, session)

    async def _append(self, record: UsageRecord, session: AsyncSession) -> None:
        session.add(UsageTransaction(
            conversation_id=record.conversation_id,
            user=record.user,
            model=record.model,
            context=record.context,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cache_write=record.cache_write,
            cache_read=record.cache_read,
            created_at=record.created_at,
        ))
        await session.flush()

    async def totals(self, conversation_id: str) -> dict[str, int]:
        """Summed input/output tokens for a conversation."""
        async with self.db.session() as session:
            result = await session.execute(
                select(UsageTransaction.input_tokens, UsageTransaction.output_tokens)
                .where(UsageTransaction.conversation_id == conversation_id)
            )
            rows = result.all()
        return {
            "input_tokens": sum(r.input_tokens for r in rows),
            "output_tokens": sum(r.output_tokens for r in rows),
        }


# ------------------------------------------------------------------
# In-memory
# ------------------------------------------------------------------


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._messages: dict[str, dict[str, Message]] = defaultdict(dict)

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, {}).values())

    async def save_message(self, message: Message) -> None:
        self._messages[message.conversation_id or ""][message.id] = message


class InMemoryUsageLedger:
    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self.records.append(record)


async def ledger_handler(ledger: SqlUsageLedger | InMemoryUsageLedger, event: Event) -> None:
    """Event bus adapter: append the record carried by a usage_recorded event."""
    record = event.data.get("record")
    if isinstance(record, UsageRecord):
        await ledger.append(record)
    else:
        logger.warning("usage_recorded event without a record: %s", event.data)
