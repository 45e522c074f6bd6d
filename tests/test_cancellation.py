"""Tests for CancellationManager and RequestHandle."""

from __future__ import annotations

import asyncio

import pytest

from parley.chat.cancellation import CancellationManager, RequestHandle


class TestAbort:
    def test_abort_is_idempotent(self):
        manager = CancellationManager("r1")
        assert manager.abort() is True
        assert manager.abort() is False
        assert manager.aborted
        assert manager.reason == "user"

    def test_abort_after_completion_is_noop(self):
        manager = CancellationManager()
        manager.mark_completed()
        assert manager.abort() is False
        assert not manager.aborted

    def test_disconnect_aborts_in_flight_request(self):
        manager = CancellationManager()
        manager.on_disconnect()
        assert manager.aborted
        assert manager.reason == "disconnect"

    def test_disconnect_after_completion_ignored(self):
        manager = CancellationManager()
        manager.mark_completed()
        manager.on_disconnect()
        assert not manager.aborted

    def test_generated_request_id(self):
        assert CancellationManager().request_id != CancellationManager().request_id

    @pytest.mark.asyncio
    async def test_wait_released_by_abort(self):
        manager = CancellationManager()
        waiter = asyncio.create_task(manager.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        manager.abort()
        await asyncio.wait_for(waiter, timeout=1)


class TestCleanup:
    @pytest.mark.asyncio
    async def test_handlers_run_once_in_order(self):
        manager = CancellationManager()
        calls = []

        async def async_handler():
            calls.append("async")

        manager.add_cleanup(lambda: calls.append("sync"))
        manager.add_cleanup(async_handler)
        await manager.run_cleanup()
        await manager.run_cleanup()
        assert calls == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        manager = CancellationManager()
        calls = []

        def broken():
            raise ValueError("nope")

        manager.add_cleanup(broken)
        manager.add_cleanup(lambda: calls.append("after"))
        await manager.run_cleanup()
        assert calls == ["after"]

    @pytest.mark.asyncio
    async def test_register_after_cleanup_rejected(self):
        manager = CancellationManager()
        await manager.run_cleanup()
        with pytest.raises(RuntimeError):
            manager.add_cleanup(lambda: None)

    @pytest.mark.asyncio
    async def test_context_manager_runs_cleanup(self):
        calls = []
        async with CancellationManager() as manager:
            manager.add_cleanup(lambda: calls.append("done"))
        assert calls == ["done"]


class TestRequestHandle:
    def test_handle_exposes_manager_state(self):
        handle = RequestHandle(CancellationManager("req-9"))
        assert handle.request_id == "req-9"
        assert not handle.aborted
        assert handle.abort() is True
        assert handle.aborted
        assert handle.abort() is False
