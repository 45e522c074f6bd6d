"""REST API for Parley.

Endpoints:
  POST /chat                    - Run a chat request, return the final result
  POST /chat/stream             - SSE streaming chat
  POST /chat/{request_id}/abort - Abort an in-flight request
  GET  /health                  - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from parley.api.schemas import ChatRequestBody
from parley.chat.runner import ChatRunner, ProgressEvent
from parley.config import Settings
from parley.errors import AssemblyError, ConfigError, ParleyError
from parley.storage.database import Database

logger = logging.getLogger(__name__)


def format_sse(payload: dict[str, Any] | str) -> str:
    """Frame one SSE event. Empty string payloads produce nothing."""
    if isinstance(payload, str):
        if not payload:
            return ""
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


def progress_payload(event: ProgressEvent) -> dict[str, Any] | str:
    if event.type == "delta":
        if not event.text:
            return ""
        return {"type": "delta", "request_id": event.request_id, "text": event.text}
    if event.type == "final" and event.response is not None:
        return {"type": "final", "final": True, **event.response.to_dict()}
    return {"type": event.type, "request_id": event.request_id}


def _error_status(exc: ParleyError) -> int:
    if isinstance(exc, AssemblyError):
        return 404
    if isinstance(exc, ConfigError):
        return 400
    return 502


def create_app(
    runner: ChatRunner,
    settings: Settings,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def _parse_body(request: Request) -> ChatRequestBody | JSONResponse:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            return ChatRequestBody.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": "Invalid request", "detail": e.errors(include_url=False)}, status_code=400)

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run a request to completion."""
        parsed = await _parse_body(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        try:
            response = await runner.run(parsed.to_chat_request())
        except ParleyError as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=_error_status(e))
        return JSONResponse(response.to_dict())

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        parsed = await _parse_body(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        chat_request = parsed.to_chat_request()

        async def event_generator():
            # registered only once the body is iterated
            handle = runner.create_handle(chat_request.request_id)
            stream = runner.stream(chat_request, handle=handle)
            try:
                async for event in stream:
                    frame = format_sse(progress_payload(event))
                    if frame:
                        yield frame
            except ParleyError as e:
                logger.error("Stream error for %s: %s", handle.request_id, e)
                yield format_sse({"type": "error", "request_id": handle.request_id, "text": str(e)})
            finally:
                await stream.aclose()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def abort_chat(request: Request) -> JSONResponse:
        """POST /chat/{request_id}/abort - Abort an in-flight request."""
        request_id = request.path_params["request_id"]
        if runner.get_handle(request_id) is None:
            return JSONResponse({"error": f"Unknown request: {request_id}"}, status_code=404)
        aborted = runner.abort(request_id)
        return JSONResponse({"request_id": request_id, "aborted": aborted})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        result: dict[str, Any] = {
            "status": "healthy",
            "provider": settings.provider,
            "model": settings.model,
            "active_requests": runner.active_requests,
        }
        if database is None:
            return JSONResponse(result)
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)
        return JSONResponse(result)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{request_id}/abort", abort_chat, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
