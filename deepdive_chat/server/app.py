"""HTTP API for deepdive-chat.

Session CRUD over the nested-directory store, on-demand summarization, and a
chat endpoint that proxies completions upstream (optionally streaming), with
ancestor context injected for child sessions.

Usage:
    deepdive-chat -c deepdive-chat.yaml serve --port 3000
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import load_config
from ..core.context_chain import ContextChainBuilder
from ..core.gateway import CompletionGateway
from ..core.store import ConversationStore
from ..core.summarizer import Summarizer
from ..storage.filesystem import FilesystemStore
from ..types import (
    Conversation,
    CorruptStateError,
    DeepDiveChatConfig,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DONE_EVENT = b"data: [DONE]\n\n"


def _sse(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _upstream_status(e: UpstreamError) -> int:
    if e.status_code is not None and e.status_code >= 400:
        return e.status_code
    return 502


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


async def _stream_events(
    gateway: CompletionGateway,
    upstream: httpx.Response,
) -> AsyncGenerator[bytes]:
    """Re-emit upstream chunks as SSE, closing with ``[DONE]``.

    A mid-stream failure emits an error event and ends the stream without
    the done marker.
    """
    try:
        async for chunk in gateway.iter_chunks(upstream):
            yield _sse(chunk)
    except UpstreamError as e:
        logger.error("Streaming error: %s", e)
        yield _sse({"error": "Streaming error"})
        return
    yield DONE_EVENT


def create_app(
    config: DeepDiveChatConfig | None = None,
    *,
    config_path: str | Path | None = None,
    store: ConversationStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    api_key: str | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Loaded configuration; loaded from *config_path* (or discovered) if omitted.
        config_path: Path to a config file.
        store: Session store; a FilesystemStore at ``storage.root`` if omitted.
        http_client: Shared upstream client; created (and closed on shutdown) if omitted.
        api_key: Upstream key override; resolved from config/env if omitted.
    """
    if config is None:
        config = load_config(config_path)
    if store is None:
        store = FilesystemStore(config.storage.root)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream.timeout, connect=10.0),
    )
    chain_builder = ContextChainBuilder(store)
    gateway = CompletionGateway(config, client, chain_builder=chain_builder, api_key=api_key)
    summarizer = Summarizer(store, gateway, config.summarization)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        if owns_client:
            await client.aclose()

    app = FastAPI(title="deepdive-chat", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.gateway = gateway
    app.state.summarizer = summarizer

    logger.info("Sessions stored in %s", getattr(store, "root", store))

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ValidationError)
    async def bad_request(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(CorruptStateError)
    async def corrupt_state(request: Request, exc: CorruptStateError) -> JSONResponse:
        logger.error("Corrupt session document: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Session document is unreadable."})

    @app.exception_handler(UpstreamError)
    async def upstream_failed(request: Request, exc: UpstreamError) -> JSONResponse:
        return JSONResponse(
            status_code=_upstream_status(exc),
            content={"error": "Upstream request failed.", "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Server error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Unexpected server error."})

    # --------------- Sessions ---------------

    @app.get("/api/sessions")
    async def list_sessions():
        return [c.to_dict() for c in store.list_all()]

    @app.post("/api/sessions")
    async def save_session(request: Request):
        body = await _read_json(request)
        try:
            conversation = Conversation.from_dict(body)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ValidationError(f"Invalid session document: {e}") from e
        path = store.save(conversation)
        return {"success": True, "path": str(path)}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str):
        store.delete(session_id)
        return {"success": True}

    @app.post("/api/sessions/{session_id}/summarize")
    async def summarize_session(session_id: str):
        result = await summarizer.summarize(session_id)
        data = result.to_dict()
        if not result.skipped:
            data["success"] = True
        return data

    # --------------- Chat proxy ---------------

    @app.post("/api/chat")
    async def chat(request: Request):
        body = await _read_json(request)
        messages = body.get("messages")
        session_id = body.get("sessionId") or None
        stream = body.get("stream", True)

        if not stream:
            completion = await gateway.complete(messages, session_id=session_id)
            return JSONResponse(content=completion)

        upstream = await gateway.open_stream(messages, session_id=session_id)
        return StreamingResponse(
            _stream_events(gateway, upstream),
            media_type="text/event-stream",
            headers={"cache-control": "no-cache", "x-accel-buffering": "no"},
        )

    return app
