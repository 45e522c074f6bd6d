"""Tests for the in-process event bus and the usage ledger handler wired to it."""

from __future__ import annotations

import asyncio

import pytest

from parley.chat.models import UsageRecord
from parley.events import USAGE_RECORDED, Event, EventBus
from parley.storage.stores import InMemoryUsageLedger, ledger_handler

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: str = "test_event",
    data: dict | None = None,
    conversation_id: str | None = "conv-1",
) -> Event:
    return Event(type=event_type, data=data or {}, conversation_id=conversation_id)


# ===========================================================================
# TestEventBus
# ===========================================================================


class TestEventBus:
    """Core event bus tests using REAL EventBus."""

    @pytest.mark.asyncio
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            # Give bus time to process
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].type == "test_event"
            assert received[0].conversation_id == "conv-1"
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_multiple_handlers_same_event(self):
        bus = EventBus()
        results: list[str] = []

        async def handler_a(event: Event) -> None:
            results.append("a")

        async def handler_b(event: Event) -> None:
            results.append("b")

        bus.on("test_event", handler_a)
        bus.on("test_event", handler_b)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert sorted(results) == ["a", "b"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: Event) -> None:
            results.append("ok")

        bus.on("test_event", bad_handler)
        bus.on("test_event", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok"]
            # Bus still running after the failure
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok", "ok"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(max_queue=1)
        # Don't start bus, events won't be processed, queue fills up
        await bus.emit(_make_event("first"))
        assert bus._queue.qsize() == 1
        await bus.emit(_make_event("second"))
        assert bus._queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.emit(_make_event(data={"n": 1}))
        await bus.emit(_make_event(data={"n": 2}))
        assert bus._queue.qsize() == 2

        await bus.start()
        await bus.stop()

        assert bus._queue.qsize() == 0
        assert [e.data["n"] for e in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_unknown_event_type_no_error(self):
        bus = EventBus()
        await bus.start()
        try:
            await bus.emit(_make_event("unknown_event_type"))
            await asyncio.sleep(0.1)
            assert bus._running is True
        finally:
            await bus.stop()


# ===========================================================================
# TestLedgerHandler
# ===========================================================================


class TestLedgerHandler:
    @pytest.mark.asyncio
    async def test_usage_event_appended_to_ledger(self):
        bus = EventBus()
        ledger = InMemoryUsageLedger()

        async def persist_usage(event: Event) -> None:
            await ledger_handler(ledger, event)

        bus.on(USAGE_RECORDED, persist_usage)
        record = UsageRecord(input_tokens=12, output_tokens=3, context="message", model="gpt-4o", conversation_id="conv-1")
        await bus.emit(Event(type=USAGE_RECORDED, data={"record": record}, conversation_id="conv-1"))
        await bus.drain()

        assert ledger.records == [record]

    @pytest.mark.asyncio
    async def test_malformed_usage_event_ignored(self):
        ledger = InMemoryUsageLedger()
        await ledger_handler(ledger, _make_event(USAGE_RECORDED, data={"record": {"input_tokens": 1}}))
        assert ledger.records == []
