"""Engine event stream to OpenAI ``chat.completion.chunk`` SSE frames."""
from __future__ import annotations

import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Optional

from engine_bridge.engine import EngineEvent, EventType, ToolCallRequest
from engine_bridge.errors import UpstreamModelError, classify_upstream_error
from engine_bridge.messages import make_tool_call_id

__all__ = ["DONE_FRAME", "StreamPhase", "ChatCompletionStream", "sse_frame"]

logger = logging.getLogger("engine_bridge.stream")

DONE_FRAME = "data: [DONE]\n\n"


def sse_frame(payload: Any) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamPhase(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    DONE = "done"


class ChatCompletionStream:
    """
    Stateful transformer for one streaming chat completion.

    Feed engine events to ``transform`` in order; each call returns the
    chunks for that event only. ``finish`` and ``fail`` end the stream.
    """

    def __init__(self, model: str, *, chat_id: Optional[str] = None, created: Optional[int] = None):
        self.model = model
        self.chat_id = chat_id or f"chatcmpl-{uuid.uuid4()}"
        self.created = created if created is not None else int(time.time())
        self.phase = StreamPhase.INIT
        self.first_chunk_sent = False
        self.tool_call_count = 0

    def _chunk(self, delta: dict[str, Any], finish_reason: Optional[str] = None) -> dict[str, Any]:
        return {
            "id": self.chat_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _content_chunk(self, delta: dict[str, Any]) -> dict[str, Any]:
        if not self.first_chunk_sent:
            delta = {"role": "assistant", **delta}
            self.first_chunk_sent = True
        self.phase = StreamPhase.STREAMING
        return self._chunk(delta)

    def _tool_call_chunks(self, request: ToolCallRequest) -> list[dict[str, Any]]:
        index = self.tool_call_count
        self.tool_call_count += 1
        call_id = make_tool_call_id(request.name)
        name_chunk = self._content_chunk({
            "tool_calls": [{
                "index": index,
                "id": call_id,
                "type": "function",
                "function": {"name": request.name, "arguments": ""},
            }]
        })
        args_chunk = self._content_chunk({
            "tool_calls": [{
                "index": index,
                "function": {"arguments": json.dumps(request.args or {}, ensure_ascii=False)},
            }]
        })
        return [name_chunk, args_chunk]

    @property
    def finish_reason(self) -> str:
        return "tool_calls" if self.tool_call_count else "stop"

    def transform(self, event: EngineEvent) -> list[dict[str, Any]]:
        """Chunks for a non-terminal event. Terminal events go through ``finish``/``fail``."""
        if self.phase is StreamPhase.DONE:
            logger.debug("Ignoring %s event after stream end", event.type)
            return []

        if event.type == EventType.CONTENT:
            if not event.value:
                return []
            return [self._content_chunk({"content": str(event.value)})]

        if event.type == EventType.TOOL_CALL_REQUEST:
            request = event.value
            if isinstance(request, dict):
                request = ToolCallRequest(name=request.get("name", ""), args=request.get("args") or {})
            return self._tool_call_chunks(request)

        logger.debug("Not forwarding %s event", event.type.value)
        return []

    def finish(self) -> list[str]:
        """Final finish_reason chunk plus the DONE sentinel, exactly once."""
        if self.phase is StreamPhase.DONE:
            return []
        self.phase = StreamPhase.DONE
        return [sse_frame(self._chunk({}, self.finish_reason)), DONE_FRAME]

    def fail(self, error: UpstreamModelError) -> list[str]:
        """Error frame plus the DONE sentinel, for errors after streaming began."""
        if self.phase is StreamPhase.DONE:
            return []
        self.phase = StreamPhase.DONE
        return [sse_frame({"error": error.to_openai_error()["error"]}), DONE_FRAME]

    async def frames(self, events: AsyncIterator[EngineEvent]) -> AsyncIterator[str]:
        """Drive the whole stream, yielding SSE frames in source order."""
        try:
            async for event in events:
                if event.type in (EventType.FINISHED, EventType.USER_CANCELLED):
                    break
                if event.type == EventType.ERROR:
                    for frame in self.fail(classify_upstream_error(event.value)):
                        yield frame
                    return
                for chunk in self.transform(event):
                    yield sse_frame(chunk)
        except Exception as exc:
            logger.error("Upstream stream failed after %s: %s", self.phase.value, exc)
            for frame in self.fail(classify_upstream_error(exc)):
                yield frame
            return

        for frame in self.finish():
            yield frame
