"""Provider transport: direct httpx calls to chat completion endpoints.

Speaks two wire formats: the OpenAI-compatible chat completions stream
(``data: {...}`` lines ending in ``data: [DONE]``) and the Anthropic
Messages stream. Both are normalized into StreamEvent objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from parley.chat.models import ApiResponse
from parley.chat.providers import ANTHROPIC_API_VERSION, WIRE_ANTHROPIC, ProviderVariant
from parley.chat.request_builder import ProviderRequest
from parley.config import Settings
from parley.errors import ProviderError

if TYPE_CHECKING:
    from parley.chat.cancellation import CancellationManager

logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"
_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0


@dataclass
class StreamEvent:
    """A single normalized event from a provider stream."""

    type: str  # open, delta, error, done
    text: str = ""
    reasoning: str = ""
    role: str | None = None
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    tool_call_deltas: list[dict[str, Any]] = field(default_factory=list)
    message: dict[str, Any] | None = None  # terminal message body, when the provider sends one


# ------------------------------------------------------------------
# Chunk parsers
# ------------------------------------------------------------------


def parse_openai_chunk(data: dict[str, Any], reasoning_key: str = "reasoning_content") -> StreamEvent | None:
    """Parse one chat.completion.chunk into a StreamEvent.

    The usage-only chunk (empty choices) still yields an event. In-stream
    ``{"error": ...}`` bodies become error events.
    """
    if "error" in data:
        error = data.get("error") or {}
        if isinstance(error, dict):
            return StreamEvent(type="error", text=f"{error.get('type', 'unknown')}: {error.get('message', '')}")
        return StreamEvent(type="error", text=str(error))

    event = StreamEvent(type="delta", usage=data.get("usage"))
    choices = data.get("choices") or []
    if choices:
        choice = choices[0]
        delta = choice.get("delta") or {}
        event.text = delta.get("content") or ""
        event.reasoning = delta.get(reasoning_key) or delta.get("reasoning") or ""
        event.role = delta.get("role")
        event.finish_reason = choice.get("finish_reason")
        for call in delta.get("tool_calls") or []:
            fn = call.get("function") or {}
            event.tool_call_deltas.append({
                "index": call.get("index", 0),
                "id": call.get("id"),
                "name": fn.get("name"),
                "arguments": fn.get("arguments") or "",
            })
        if "message" in choice:
            event.message = choice["message"]

    if not (event.text or event.reasoning or event.role or event.finish_reason
            or event.usage or event.tool_call_deltas or event.message is not None):
        return None
    return event


def parse_anthropic_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE event dict into a StreamEvent.

    Skips ping keepalives. stop_reason arrives in message_delta, not
    message_start. In-stream error events (HTTP 200 with an error body)
    become error events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(type="error", text=f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    if event_type == "message_start":
        message = data.get("message", {})
        return StreamEvent(type="delta", role=message.get("role"), usage=message.get("usage"))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="delta",
                tool_call_deltas=[{
                    "index": data.get("index", 0),
                    "id": block.get("id", ""),
                    "name": block.get("name", ""),
                    "arguments": "",
                }],
            )
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return StreamEvent(type="delta", text=delta.get("text", ""))
        if delta.get("type") == "thinking_delta":
            return StreamEvent(type="delta", reasoning=delta.get("thinking", ""))
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="delta",
                tool_call_deltas=[{"index": data.get("index", 0), "arguments": delta.get("partial_json", "")}],
            )
        return None

    if event_type == "message_delta":
        return StreamEvent(
            type="delta",
            finish_reason=data.get("delta", {}).get("stop_reason"),
            usage=data.get("usage"),
        )

    if event_type == "message_stop":
        return StreamEvent(type="done")

    return None


def build_auth_headers(variant: ProviderVariant, settings: Settings) -> dict[str, str]:
    """Default headers for a provider, including auth."""
    headers: dict[str, str] = {"content-type": "application/json"}
    key = settings.key_for(variant.name)

    if variant.wire_format == WIRE_ANTHROPIC:
        headers["anthropic-version"] = ANTHROPIC_API_VERSION
        auth_token = settings.anthropic_auth_token or ""
        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers
        if auth_token or "sk-ant-oat" in key:
            token = auth_token or key
            headers["authorization"] = f"Bearer {token}"
            if "sk-ant-oat" in token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif key:
            headers["x-api-key"] = key
    elif variant.name == "azure":
        if key:
            headers["api-key"] = key
    elif key:
        headers["authorization"] = f"Bearer {key}"

    if variant.name == "openrouter":
        headers["HTTP-Referer"] = "https://github.com/parley-chat/parley"
        headers["X-Title"] = "Parley"

    if not key and variant.name not in ("ollama", "custom") and "authorization" not in headers:
        logger.warning("No API key configured for provider %s, API calls will fail", variant.name)
    return headers


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class CompletionClient:
    """Async HTTP client for one provider variant."""

    def __init__(
        self,
        settings: Settings,
        variant: ProviderVariant,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self.variant = variant
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=self.variant.base_url,
            headers=build_auth_headers(self.variant, settings),
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("httpx client initialized (provider: %s, base: %s)", self.variant.name, self.variant.base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized, call start() first")
        return self._http

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_completion(
        self,
        request: ProviderRequest,
        signal: CancellationManager | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """POST a streaming request and yield normalized events.

        Yields an ``open`` event once the provider accepts the request. Each
        line read is raced against ``signal``, so an abort during a quiet
        stream stops at once; leaving the ``async with`` closes the HTTP
        stream. Transport failures raise ProviderError.
        """
        http = self._require_http()
        anthropic = self.variant.wire_format == WIRE_ANTHROPIC

        try:
            async with http.stream("POST", request.path, json=request.body, params=request.params) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise _error_from_body(response.status_code, body.decode(errors="replace"))

                yield StreamEvent(type="open")

                lines = response.aiter_lines()
                while True:
                    if signal is not None and signal.aborted:
                        logger.debug("Stream abandoned on abort (%s)", request.context)
                        return
                    line = await _next_line(lines, signal)
                    if line is None:
                        if signal is not None and signal.aborted:
                            logger.debug("Stream abandoned on abort (%s)", request.context)
                        return
                    # Only data: lines carry payloads (event: lines are skipped)
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if not raw:
                        continue
                    if raw == _DONE_SENTINEL:
                        yield StreamEvent(type="done")
                        return
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed stream line: %s", raw[:200])
                        continue
                    event = parse_anthropic_event(data) if anthropic else parse_openai_chunk(data, self.variant.reasoning_key)
                    if event is None:
                        continue
                    yield event
                    if event.type in ("error", "done"):
                        return
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(
        self,
        request: ProviderRequest,
        signal: CancellationManager | None = None,
    ) -> ApiResponse:
        """Non-streaming call, raced against ``signal`` when given.

        Raises ProviderError on persistent errors or when aborted first.
        """
        if signal is None:
            return await self._call_api(request)
        if signal.aborted:
            raise ProviderError("Request aborted before dispatch")

        call = asyncio.ensure_future(self._call_api(request))
        waiter = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            waiter.cancel()
        if call in done:
            return call.result()
        call.cancel()
        raise ProviderError("Request aborted")

    async def _call_api(self, request: ProviderRequest) -> ApiResponse:
        """POST with one retry for 429/500/529 and capped retry-after."""
        http = self._require_http()

        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await http.post(request.path, json=request.body, params=request.params)

                if response.status_code == 200:
                    return self._parse_response(response.json())

                error = _error_from_body(response.status_code, response.text)
                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_AFTER)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error.error_type,
                        retry_after,
                        error,
                    )
                    await asyncio.sleep(retry_after)
                    continue
                last_error = error

            except httpx.TimeoutException as e:
                last_error = ProviderError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ProviderError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ProviderError("API call failed with unknown error")

    def _parse_response(self, data: dict[str, Any]) -> ApiResponse:
        if self.variant.wire_format == WIRE_ANTHROPIC:
            text = "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")
            return ApiResponse(text=text, finish_reason=data.get("stop_reason"), usage=data.get("usage"), raw=data)
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return ApiResponse(
            text=message.get("content") or "",
            finish_reason=choices[0].get("finish_reason"),
            usage=data.get("usage"),
            raw=data,
        )


async def _read_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def _next_line(lines: AsyncIterator[str], signal: CancellationManager | None) -> str | None:
    """Next stream line, or None at end of stream or once ``signal`` fires."""
    if signal is None:
        return await _read_line(lines)

    read = asyncio.ensure_future(_read_line(lines))
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read.cancel()
        raise
    finally:
        waiter.cancel()
    if read in done:
        return read.result()
    read.cancel()
    await asyncio.wait({read})
    return None


def _error_from_body(status_code: int, body: str) -> ProviderError:
    """Build a ProviderError from an API error body ({"error": {type, message}})."""
    try:
        payload = json.loads(body)
        error = payload.get("error", {})
        if isinstance(error, str):
            error_type, error_msg = "error", error
        else:
            error_type = error.get("type") or error.get("code") or "unknown"
            error_msg = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body[:500]
    return ProviderError(
        f"Provider API error ({status_code}): {error_type} - {error_msg}",
        status_code=status_code,
        error_type=str(error_type),
    )
