"""HTTP surface for the session engine.

Turns stream back as server-sent events, one event per turn event:

    event: delta
    data: {"type": "delta", "text": "Hel"}

Usage:
    session-engine serve --host 127.0.0.1 --port 8600
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..engine import SessionEngine
from ..errors import (
    ConversationNotFound,
    EmptyInput,
    LimitReached,
    RateLimited,
    SessionEngineError,
    TurnInProgress,
    ValidationError,
)
from ..storage.helpers import dt_to_str, turn_to_dict
from ..types import CacheStats, CompleteEvent, FileInput, TurnEvent

logger = logging.getLogger(__name__)

_STATUS_FOR: list[tuple[type[SessionEngineError], int]] = [
    (ConversationNotFound, 404),
    (EmptyInput, 422),
    (ValidationError, 422),
    (LimitReached, 409),
    (TurnInProgress, 409),
    (RateLimited, 429),
]


def status_for(error: SessionEngineError) -> int:
    for exc_type, status in _STATUS_FOR:
        if isinstance(error, exc_type):
            return status
    return 500


def event_to_dict(event: TurnEvent) -> dict:
    if isinstance(event, CompleteEvent):
        return {"type": event.type, "turn": turn_to_dict(event.turn)}
    return asdict(event)


def format_sse(event: TurnEvent) -> str:
    payload = json.dumps(event_to_dict(event), default=str)
    return f"event: {event.type}\ndata: {payload}\n\n"


def _parse_files(raw: list) -> list[FileInput]:
    files = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"files[{i}] must be an object", reason="malformed_request")
        try:
            data = base64.b64decode(item.get("data_base64", ""), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(
                f"files[{i}]: invalid base64 ({e})",
                reason="malformed_request",
                user_message="An attachment could not be read.",
            ) from e
        files.append(FileInput(
            filename=item.get("filename", f"file-{i}"),
            mime_type=item.get("mime_type", "application/octet-stream"),
            data=data,
        ))
    return files


def client_id_for(request: Request) -> str:
    """Best guess at the caller's address, proxy headers first."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def create_app(engine: SessionEngine) -> FastAPI:
    """Build the FastAPI app. The app owns the engine's lifecycle."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        await engine.start()
        yield
        await engine.close()

    app = FastAPI(title="session-engine", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(SessionEngineError)
    async def engine_error(request: Request, exc: SessionEngineError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("Unhandled engine error on %s: %s", request.url.path, exc)
        body = {"type": type(exc).__name__, "message": exc.user_message}
        reason = getattr(exc, "reason", "")
        if reason:
            body["reason"] = reason
        headers = {}
        if isinstance(exc, RateLimited):
            retry_after = max(1, math.ceil(exc.retry_after))
            body["retry_after"] = retry_after
            headers = {"Retry-After": str(retry_after), "X-RateLimit-Limit": str(exc.limit)}
        return JSONResponse({"error": body}, status_code=status, headers=headers)

    async def _body(request: Request) -> dict:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed JSON body: {e}", reason="malformed_request") from e
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object", reason="malformed_request")
        return body

    @app.get("/conversations")
    async def list_conversations(limit: int = 20):
        listings = await engine.list_recent(limit)
        return {
            "conversations": [
                {
                    "conversation_id": item.conversation_id,
                    "last_activity": dt_to_str(item.last_activity),
                    "turn_count": item.turn_count,
                }
                for item in listings
            ]
        }

    @app.post("/conversations", status_code=201)
    async def new_conversation():
        return {"conversation_id": await engine.start_new_conversation()}

    @app.post("/conversations/import", status_code=201)
    async def import_conversation(request: Request):
        raw = await request.body()
        return {"conversation_id": await engine.import_conversation(raw)}

    @app.post("/conversations/{conversation_id}/turns")
    async def submit_turn(conversation_id: str, request: Request):
        body = await _body(request)
        text = body.get("text", "")
        if not isinstance(text, str):
            raise ValidationError("'text' must be a string", reason="malformed_request")
        files = _parse_files(body.get("files") or [])
        await engine.load_conversation(conversation_id)
        stream = engine.submit_turn(conversation_id, text, files, client_id=client_id_for(request))

        async def events():
            try:
                async for event in stream:
                    yield format_sse(event)
            finally:
                # Client went away mid-stream.
                if not stream.done:
                    stream.cancel()

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/conversations/{conversation_id}/usage")
    async def usage(conversation_id: str):
        await engine.load_conversation(conversation_id)
        return asdict(engine.get_usage(conversation_id))

    @app.get("/conversations/{conversation_id}/export")
    async def export(conversation_id: str):
        data = await engine.export_conversation(conversation_id)
        return Response(
            content=data,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="conversation-{conversation_id}.json"'},
        )

    @app.get("/conversations/{conversation_id}/summary")
    async def summary(conversation_id: str):
        await engine.load_conversation(conversation_id)
        return asdict(engine.session_summary(conversation_id))

    @app.post("/conversations/{conversation_id}/reset")
    async def reset(conversation_id: str):
        await engine.load_conversation(conversation_id)
        return {"conversation_id": await engine.reset_conversation(conversation_id)}

    @app.get("/cache/stats")
    async def cache_stats():
        stats = engine.cache.stats() if engine.cache is not None else CacheStats()
        return asdict(stats)

    @app.delete("/data")
    async def wipe():
        await engine.clear_all_local_data()
        return {"cleared": True}

    return app
