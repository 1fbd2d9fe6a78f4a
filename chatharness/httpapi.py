"""HTTP endpoints over the harness: chat, streaming chat and the model list.

Handlers answer with JSON and never log request or response bodies.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from starlette.applications import Starlette
from starlette.requests import Request as HTTPRequest
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from chatharness.errors import (
    ErrorKind,
    NotFoundError,
    ProviderError,
    VersionConflictError,
    as_provider_error,
)
from chatharness.harness import Harness
from chatharness.messages import Request
from chatharness.streaming import StreamEvent, StreamReader
from chatharness.validate import ValidationError

Endpoint = Callable[[HTTPRequest], Awaitable[Response]]

_E = TypeVar("_E", bound=BaseException)

_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.AUTH_FAILED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.OVERLOADED: 503,
    ErrorKind.CONTEXT_LENGTH: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNSUPPORTED_CONTENT: 400,
    ErrorKind.CANCELED: 499,  # client closed request (nginx convention)
    ErrorKind.SERVER_ERROR: 502,
    ErrorKind.UNKNOWN: 502,
    ErrorKind.TOOLS_UNSUPPORTED: 502,
}

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx proxy buffering
}

# Close calls scheduled during cancellation are kept alive here until done.
_background: set[asyncio.Future[Any]] = set()


def map_kind_to_status(kind: ErrorKind | str | None) -> int:
    """HTTP status for a provider error kind that carries no status of its own."""
    try:
        return _KIND_STATUS[ErrorKind(kind)] if kind else 500
    except ValueError:
        return 500


def _find_in_chain(err: BaseException, cls: type[_E]) -> _E | None:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        if isinstance(current, cls):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def _error_body(message: str, kind: str = "", meta: dict[str, str] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message}
    if kind:
        body["kind"] = kind
    if meta:
        body["meta"] = meta
    return body


def error_response(err: BaseException) -> JSONResponse:
    """Turn ``err`` into a JSON error response with a fitting status."""
    pe = as_provider_error(err)
    if pe is not None:
        status = pe.status_code or map_kind_to_status(pe.kind)
        meta = {"provider": pe.provider, "model": pe.model}
        if pe.request_id:
            meta["request_id"] = pe.request_id
        return JSONResponse(
            _error_body(pe.message or str(pe), str(pe.kind or ""), meta), status_code=status
        )
    if (ve := _find_in_chain(err, ValidationError)) is not None:
        return JSONResponse(_error_body(str(ve), "InvalidRequest"), status_code=400)
    if _find_in_chain(err, NotFoundError) is not None:
        return JSONResponse(_error_body(str(err), "NotFound"), status_code=404)
    if _find_in_chain(err, VersionConflictError) is not None:
        return JSONResponse(_error_body(str(err), "VersionConflict"), status_code=409)
    return JSONResponse(_error_body(str(err), "Unknown"), status_code=500)


async def _read_chat_request(request: HTTPRequest) -> Request:
    """Decode the body into a chat Request; raises ValueError on bad input."""
    raw = await request.body()
    return Request.from_dict(json.loads(raw))


def _bad_body(err: Exception) -> JSONResponse:
    return JSONResponse(_error_body(f"invalid JSON body: {err}"), status_code=400)


def chat_endpoint(harness: Harness) -> Endpoint:
    """POST /api/chat: one non-streaming turn, answered with the Response as JSON."""

    async def endpoint(request: HTTPRequest) -> Response:
        try:
            req = await _read_chat_request(request)
        except ValueError as err:
            return _bad_body(err)
        try:
            resp = await harness.send(req)
        except Exception as err:
            return error_response(err)
        return JSONResponse(resp.to_dict())

    return endpoint


def models_endpoint(harness: Harness) -> Endpoint:
    """GET /api/models: every registered model and the provider names."""

    async def endpoint(request: HTTPRequest) -> Response:
        return JSONResponse(
            {
                "models": [m.to_dict() for m in harness.catalog().list()],
                "providers": harness.providers(),
            }
        )

    return endpoint


@dataclass
class _Failure:
    error: BaseException


_END = object()


async def _pump(reader: StreamReader, queue: asyncio.Queue[Any]) -> None:
    try:
        async for event in reader:
            await queue.put(event)
    except Exception as err:
        pe = as_provider_error(err)
        # A canceled stream means the client went away: close silently.
        if pe is None or pe.kind != ErrorKind.CANCELED:
            await queue.put(_Failure(err))
    await queue.put(_END)


def _compact(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _sse_event(event: StreamEvent) -> str:
    return f"event: {event.kind}\ndata: {_compact(event.to_dict())}\n\n"


def _sse_error(err: BaseException) -> str:
    payload = {"error": str(err)}
    pe = as_provider_error(err)
    if pe is not None:
        payload["kind"] = str(pe.kind or "")
        payload["provider"] = pe.provider
        payload["model"] = pe.model
    return f"event: error\ndata: {_compact(payload)}\n\n"


async def _sse_frames(reader: StreamReader, ping_interval: float) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=8)
    pump = asyncio.create_task(_pump(reader, queue))
    next_ping = loop.time() + ping_interval
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), max(0.0, next_ping - loop.time()))
            except TimeoutError:
                next_ping += ping_interval
                yield ": ping\n\n"
                continue
            if item is _END:
                return
            if isinstance(item, _Failure):
                yield _sse_error(item.error)
                return
            yield _sse_event(item)
    finally:
        pump.cancel()
        closing = asyncio.ensure_future(reader.close())
        _background.add(closing)
        closing.add_done_callback(_background.discard)
        await asyncio.shield(closing)


def stream_endpoint(harness: Harness, ping_interval: float = 15.0) -> Endpoint:
    """POST /api/chat/stream: stream events as SSE frames, with keep-alive pings."""

    async def endpoint(request: HTTPRequest) -> Response:
        try:
            req = await _read_chat_request(request)
        except ValueError as err:
            return _bad_body(err)
        try:
            reader = await harness.stream(req)
        except Exception as err:
            return error_response(err)
        return StreamingResponse(
            _sse_frames(reader, ping_interval), status_code=200, headers=_SSE_HEADERS
        )

    return endpoint


def create_app(harness: Harness, ping_interval: float = 15.0) -> Starlette:
    """An ASGI application serving the chat, stream and models endpoints."""
    return Starlette(
        routes=[
            Route("/api/models", models_endpoint(harness), methods=["GET"]),
            Route("/api/chat", chat_endpoint(harness), methods=["POST"]),
            Route("/api/chat/stream", stream_endpoint(harness, ping_interval), methods=["POST"]),
        ]
    )