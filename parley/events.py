"""In-process async event bus for Parley.

Usage records, generated titles and request completions are published as
events. Handlers run concurrently and errors are isolated. One broken
handler (a ledger whose database is down, say) never crashes the bus or
delays the chat request that emitted the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

USAGE_RECORDED = "usage_recorded"
TITLE_GENERATED = "title_generated"
REQUEST_FINISHED = "request_finished"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    request_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Async event bus with a bounded queue and per-handler error isolation.

    emit() never blocks: events are queued for a background task, and a
    full queue drops the event with a warning.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    async def emit(self, event: Event) -> None:
        """Queue an event for async processing. Drops it if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the loop, then dispatch whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Dispatch every queued event in the caller's task."""
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Only cancellation propagates."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )
