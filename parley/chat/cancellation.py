"""Per-request cancellation signal and cleanup registry."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CleanupHandler = Callable[[], Awaitable[None] | None]


class CancellationManager:
    """One abort signal plus ordered cleanup handlers for a single request.

    abort() is edge-triggered: it fires once and is a no-op afterwards, and
    also a no-op once the request has completed. Cleanup handlers run at
    most once each, in registration order; a failing handler is logged and
    the rest still run.
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id or str(uuid.uuid4())
        self.request_completed = False
        self.reason: str | None = None
        self._event = asyncio.Event()
        self._cleanup: list[CleanupHandler] | None = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "user") -> bool:
        """Fire the signal. Returns True only on the call that actually aborted."""
        if self._event.is_set() or self.request_completed:
            return False
        self.reason = reason
        self._event.set()
        logger.info("Request %s aborted (%s)", self.request_id, reason)
        return True

    def mark_completed(self) -> None:
        """Final response sent; later disconnects must not abort."""
        self.request_completed = True

    def on_disconnect(self) -> None:
        """Client went away. Aborts only if the request is still in flight."""
        if self._event.is_set() or self.request_completed:
            return
        self.abort("disconnect")

    async def wait(self) -> None:
        await self._event.wait()

    def add_cleanup(self, handler: CleanupHandler) -> None:
        if self._cleanup is None:
            raise RuntimeError(f"Cleanup already ran for request {self.request_id}")
        self._cleanup.append(handler)

    async def run_cleanup(self) -> None:
        """Run every registered handler once, then drop the registry."""
        handlers, self._cleanup = self._cleanup, None
        if not handlers:
            return
        for handler in handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Cleanup handler %s failed for request %s",
                    getattr(handler, "__qualname__", handler),
                    self.request_id,
                )

    async def __aenter__(self) -> CancellationManager:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.run_cleanup()


class RequestHandle:
    """Caller-facing handle for one in-flight request."""

    def __init__(self, manager: CancellationManager | None = None) -> None:
        self.manager = manager or CancellationManager()

    @property
    def request_id(self) -> str:
        return self.manager.request_id

    @property
    def aborted(self) -> bool:
        return self.manager.aborted

    def abort(self) -> bool:
        return self.manager.abort("user")
