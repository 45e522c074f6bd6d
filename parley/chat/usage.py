"""Token usage accounting.

Provider usage payloads are normalized into snapshots of the form
``{input_tokens, output_tokens, input_token_details: {cache_creation,
cache_read}, reasoning_tokens?, model?}``. One snapshot is collected per
provider call; the recorder turns a request's snapshots into ledger
records and request totals.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from parley.chat.models import UsageRecord, UsageTotals
from parley.events import USAGE_RECORDED, Event, EventBus

logger = logging.getLogger(__name__)


class UsageLedger(Protocol):
    """Append-only sink for usage records."""

    async def append(self, record: UsageRecord) -> None: ...


def normalize_usage(raw: dict[str, Any] | None, model: str | None = None) -> dict[str, Any] | None:
    """Normalize an OpenAI- or Anthropic-style usage payload into a snapshot.

    OpenAI reports cached prompt tokens inside prompt_tokens; they are split
    out so input + cache always equals the prompt size. When reasoning tokens
    are reported, output becomes |reasoning - completion| and the reasoning
    count is kept separately.
    """
    if not raw:
        return None

    if "prompt_tokens" in raw or "completion_tokens" in raw:
        prompt = int(raw.get("prompt_tokens") or 0)
        completion = int(raw.get("completion_tokens") or 0)
        cached = int((raw.get("prompt_tokens_details") or {}).get("cached_tokens") or 0)
        reasoning = (raw.get("completion_tokens_details") or {}).get("reasoning_tokens")
        snapshot: dict[str, Any] = {
            "input_tokens": prompt - cached,
            "output_tokens": completion,
            "input_token_details": {"cache_creation": 0, "cache_read": cached},
        }
        if reasoning:
            snapshot["reasoning_tokens"] = int(reasoning)
            snapshot["output_tokens"] = abs(int(reasoning) - completion)
    else:
        details = raw.get("input_token_details") or {}
        snapshot = {
            "input_tokens": int(raw.get("input_tokens") or 0),
            "output_tokens": int(raw.get("output_tokens") or 0),
            "input_token_details": {
                "cache_creation": int(details.get("cache_creation") or raw.get("cache_creation_input_tokens") or 0),
                "cache_read": int(details.get("cache_read") or raw.get("cache_read_input_tokens") or 0),
            },
        }
        if raw.get("reasoning_tokens"):
            snapshot["reasoning_tokens"] = int(raw["reasoning_tokens"])

    model = raw.get("model") or model
    if model:
        snapshot["model"] = model
    return snapshot


def _cache(snapshot: dict[str, Any]) -> tuple[int, int]:
    details = snapshot.get("input_token_details") or {}
    return int(details.get("cache_creation") or 0), int(details.get("cache_read") or 0)


def compute_totals(snapshots: Sequence[dict[str, Any] | None]) -> UsageTotals:
    """Request totals across collected snapshots.

    Input is the first call's full prompt (cache included). Each later call's
    prompt growth beyond everything already counted is new output (tool
    results, intermediate replies); a negative growth is ignored and only the
    call's own output is counted.
    """
    usable = [s for s in snapshots if s]
    if not usable:
        return UsageTotals()

    first_write, first_read = _cache(usable[0])
    input_tokens = int(usable[0].get("input_tokens") or 0) + first_write + first_read

    output_tokens = 0
    previous = input_tokens
    for i, usage in enumerate(usable):
        write, read = _cache(usage)
        if i > 0:
            delta = int(usage.get("input_tokens") or 0) + write + read - previous
            if delta > 0:
                output_tokens += delta
        turn_output = int(usage.get("output_tokens") or 0)
        output_tokens += turn_output
        previous += turn_output

    return UsageTotals(input_tokens=input_tokens, output_tokens=output_tokens)


def calculate_current_token_count(
    token_count_map: dict[str, int],
    current_message_id: str,
    usage: dict[str, Any] | None,
) -> int:
    """Re-derive the newest user message's size from reported input tokens.

    Falls back to the estimate when usage is missing or the result is not
    positive.
    """
    original = token_count_map.get(current_message_id) or 0
    if not usage or not isinstance(usage.get("input_tokens"), int):
        return original
    others = sum(v for k, v in token_count_map.items() if k != current_message_id and isinstance(v, int))
    current = usage["input_tokens"] - others
    return current if current > 0 else original


class UsageRecorder:
    """Turns collected usage into ledger records, emitted fire-and-forget.

    Records go through the event bus when one is wired (the ledger is then a
    bus handler); otherwise they are appended to the ledger in background
    tasks. Ledger failures are logged, never raised.
    """

    def __init__(self, bus: EventBus | None = None, ledger: UsageLedger | None = None) -> None:
        self._bus = bus
        self._ledger = ledger
        self._pending: set[asyncio.Task] = set()

    @staticmethod
    def derive_records(
        snapshots: Sequence[dict[str, Any] | None],
        *,
        model: str,
        context: str = "message",
        conversation_id: str | None = None,
        user: str | None = None,
    ) -> list[UsageRecord]:
        """One record per call, plus a reasoning record where reasoning was reported."""
        records: list[UsageRecord] = []
        for usage in snapshots:
            if not usage:
                continue
            write, read = _cache(usage)
            record_model = usage.get("model") or model
            records.append(UsageRecord(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
                context=context,
                model=record_model,
                conversation_id=conversation_id,
                user=user,
                cache_write=write if write or read else None,
                cache_read=read if write or read else None,
            ))
            if usage.get("reasoning_tokens"):
                records.append(UsageRecord(
                    input_tokens=0,
                    output_tokens=int(usage["reasoning_tokens"]),
                    context="reasoning",
                    model=record_model,
                    conversation_id=conversation_id,
                    user=user,
                ))
        return records

    async def record(
        self,
        snapshots: Sequence[dict[str, Any] | None],
        *,
        model: str,
        context: str = "message",
        conversation_id: str | None = None,
        user: str | None = None,
    ) -> UsageTotals:
        """Emit records for ``snapshots`` and return the request totals."""
        records = self.derive_records(
            snapshots,
            model=model,
            context=context,
            conversation_id=conversation_id,
            user=user,
        )
        for record in records:
            await self._emit(record)
        return compute_totals(snapshots)

    async def _emit(self, record: UsageRecord) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(
                type=USAGE_RECORDED,
                data={"record": record},
                conversation_id=record.conversation_id,
            ))
            return
        if self._ledger is None:
            logger.debug("No usage ledger configured, dropping %s record", record.context)
            return
        task = asyncio.create_task(self._append(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, record: UsageRecord) -> None:
        try:
            await self._ledger.append(record)
        except Exception:
            logger.exception("Error recording %s usage for conversation %s", record.context, record.conversation_id)

    async def flush(self) -> None:
        """Wait for background ledger appends (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
