"""OpenAI-compatible chat completions endpoints."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, AsyncIterator, Literal, Optional, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from engine_bridge.engine import Engine, EngineEvent, EventType
from engine_bridge.errors import ProtocolError, UpstreamModelError, classify_upstream_error
from engine_bridge.messages import build_chat_request
from engine_bridge.stream import ChatCompletionStream, StreamPhase

logger = logging.getLogger("engine_bridge.chat")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool", "developer"]
    content: Union[str, list[Any], None] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(..., min_length=1, description="Model to use for the completion")
    messages: list[ChatMessage] = Field(..., min_length=1, description="Conversation so far")
    stream: bool = Field(default=True, description="Only streaming responses are supported")
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: Optional[Union[str, dict[str, Any]]] = None


def openai_error_response(status_code: int, message: str, error_type: str, code: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "param": None, "code": code}},
    )


async def _until_disconnect(
    request: Request,
    events: AsyncIterator[EngineEvent],
    signal: asyncio.Event,
    request_id: str,
) -> AsyncIterator[EngineEvent]:
    """Forward events until the client goes away, then raise the abort signal."""
    async for event in events:
        if await request.is_disconnected():
            logger.info("Client disconnected, aborting request %s", request_id)
            signal.set()
            yield EngineEvent(EventType.USER_CANCELLED)
            return
        yield event


async def _prepend(first: EngineEvent, rest: AsyncIterator[EngineEvent]) -> AsyncIterator[EngineEvent]:
    yield first
    async for event in rest:
        yield event


def create_chat_router(engine: Engine, available_models: list[str]) -> APIRouter:
    """Build the ``/v1`` router bound to one engine."""
    router = APIRouter(prefix="/v1")

    @router.post("/chat/completions")
    async def chat_completions(body: ChatCompletionRequest, request: Request):
        """Stream a chat completion in the OpenAI chunk format."""
        request_id = str(uuid.uuid4())
        start = time.monotonic()
        logger.info(
            "Chat completion request %s received: model=%s stream=%s messages=%d tools=%d",
            request_id, body.model, body.stream, len(body.messages), len(body.tools or []),
        )

        if not body.stream:
            return openai_error_response(
                501,
                "Non-streaming responses are not yet implemented.",
                "invalid_request_error",
                "not_implemented",
            )

        signal = asyncio.Event()
        try:
            chat_request = build_chat_request(
                [message.model_dump(exclude_none=True) for message in body.messages],
                body.tools,
                body.tool_choice,
            )
            # A fresh engine chat per request; no history is kept between requests
            chat = engine.model_client.start_chat(
                model=body.model,
                history=chat_request.history,
                config=chat_request.config,
            )
            stream = chat.send_message_stream(chat_request.message, signal)
            if inspect.isawaitable(stream):
                stream = await stream
            events = stream.__aiter__()
            # Pull the first event before committing to a 200 event stream
            try:
                first = await events.__anext__()
            except StopAsyncIteration:
                first = EngineEvent(EventType.FINISHED)
            if first.type == EventType.ERROR:
                raise classify_upstream_error(first.value)
        except ProtocolError as exc:
            logger.warning("Chat completion request %s rejected: %s", request_id, exc.message)
            return openai_error_response(400, exc.message, "invalid_request_error", "invalid_request")
        except Exception as exc:
            error = exc if isinstance(exc, UpstreamModelError) else classify_upstream_error(exc)
            logger.error(
                "Chat completion request %s failed after %dms: %s",
                request_id, int((time.monotonic() - start) * 1000), error.message,
            )
            return JSONResponse(status_code=error.status_code, content=error.to_openai_error())

        transformer = ChatCompletionStream(body.model)

        async def event_stream():
            source = _until_disconnect(request, _prepend(first, events), signal, request_id)
            try:
                async for frame in transformer.frames(source):
                    yield frame
            finally:
                # Cancellation or a dropped connection must still reach the engine
                if transformer.phase is not StreamPhase.DONE:
                    logger.info("Stream for request %s ended early, aborting", request_id)
                    signal.set()
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()
            logger.info(
                "Chat completion request %s finished: finish_reason=%s tool_calls=%d duration_ms=%d",
                request_id, transformer.finish_reason, transformer.tool_call_count,
                int((time.monotonic() - start) * 1000),
            )

        return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    @router.get("/models")
    async def list_models():
        """List the model identifiers this bridge accepts."""
        models = list(available_models)
        try:
            current = engine.config.get_model()
        except Exception:
            logger.warning("Engine did not report a current model", exc_info=True)
            current = None
        if current and current not in models:
            models.insert(0, current)
        return {
            "object": "list",
            "data": [{"id": model_id, "object": "model", "owned_by": "engine-bridge"} for model_id in models],
        }

    return router
