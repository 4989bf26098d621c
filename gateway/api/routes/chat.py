"""
Agent Gateway - Chat Endpoint

One POST per user turn.  The body carries the whole conversation; the
response is an SSE stream of reasoning entries, tool observations and a
final answer (or the model's own replayed chunks), always closed by a single
``data: [DONE]`` frame unless the client disconnects first.
"""
from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.responses import Response

from gateway.config import settings
from gateway.core.agent_loop import AgentLoopController
from gateway.core.llm_client import get_upstream_client
from gateway.core.tools import build_default_registry
from gateway.models.requests import ChatRequest
from gateway.protocol.emitter import DONE_FRAME, ProtocolSerializationError, emit
from gateway.protocol.events import ErrorEvent
from gateway.services.history import get_history_recorder

router = APIRouter()
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_agent_controller() -> AgentLoopController:
    """Dependency: a controller wired to the shared upstream client and history sink."""
    return AgentLoopController(
        upstream=get_upstream_client(),
        registry=build_default_registry(),
        history=get_history_recorder(),
    )


def _malformed(detail: object) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Malformed request body", "detail": jsonable_encoder(detail)},
    )


@router.post("/chat")
@limiter.limit(settings.chat_rate_limit)
async def chat(
    request: Request,
    controller: AgentLoopController = Depends(get_agent_controller),
) -> Response:
    """
    Streaming chat endpoint (SSE).

    The body is parsed here rather than by FastAPI so malformed input gets the
    gateway's own 400 shape instead of a 422.
    """
    try:
        body = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Rejected chat request: invalid JSON ({e})")
        return _malformed(str(e))

    try:
        chat_request = ChatRequest.model_validate(body)
    except ValidationError as e:
        logger.warning(f"Rejected chat request: {e.error_count()} validation error(s)")
        return _malformed(e.errors(include_url=False, include_context=False, include_input=False))

    messages = [m.to_chat_message() for m in chat_request.messages]
    user_id = chat_request.user_id

    async def stream_chat() -> AsyncIterator[str]:
        started = time.monotonic()
        frames = 0
        terminated = False

        logger.info(f"🔌 SSE stream opened: user={user_id}, messages={len(messages)}")

        try:
            async for frame in controller.run(
                messages,
                user_id=user_id,
                is_cancelled=request.is_disconnected,
            ):
                if frame == DONE_FRAME:
                    terminated = True
                frames += 1
                yield frame

            elapsed = time.monotonic() - started
            if terminated:
                logger.info(f"✅ SSE stream completed: {frames} frames in {elapsed:.1f}s")
            else:
                logger.warning(f"⚠️ SSE client disconnected after {elapsed:.1f}s, {frames} frames sent")

        except ProtocolSerializationError as e:
            elapsed = time.monotonic() - started
            logger.error(f"❌ Protocol serialization failure after {elapsed:.1f}s, {frames} frames: {e}")
            if not terminated:
                yield emit(ErrorEvent.of("Protocol serialization failure", code="protocol_error"))
                yield DONE_FRAME
        except Exception as e:
            elapsed = time.monotonic() - started
            logger.exception(f"❌ SSE stream error after {elapsed:.1f}s, {frames} frames: {e}")
            if not terminated:
                yield emit(ErrorEvent.of(str(e) or type(e).__name__, code="internal_error"))
                yield DONE_FRAME

    return StreamingResponse(
        stream_chat(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
