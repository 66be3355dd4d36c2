"""
Bridge error taxonomy.

Every failure the bridge reports belongs to one ``ErrorKind``. Protocol and
tool errors are rendered as JSON-RPC errors on the MCP side; upstream model
errors are rendered as OpenAI-style error bodies on the chat side.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, ErrorData

__all__ = [
    "ErrorKind",
    "BridgeError",
    "ProtocolError",
    "ToolExecutionError",
    "UpstreamModelError",
    "SESSION_ERROR",
    "classify_upstream_error",
    "jsonrpc_error",
]

logger = logging.getLogger("engine_bridge.errors")

# Server-defined JSON-RPC code used for session and tool failures
SESSION_ERROR = -32000


class ErrorKind(str, Enum):
    PROTOCOL = "protocol"
    TOOL_EXECUTION = "tool_execution"
    UPSTREAM_MODEL = "upstream_model"
    INTERNAL = "internal"


class BridgeError(RuntimeError):
    """Base class for errors raised by the bridge itself."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: int = INTERNAL_ERROR,
        data: Any = None,
        original_exc: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.original_exc = original_exc
        if original_exc is not None:
            self.__cause__ = original_exc

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message, data=self.data)


class ProtocolError(BridgeError):
    """Malformed request, bad request shape, or missing/unknown session."""

    kind = ErrorKind.PROTOCOL
    status_code = 400

    def __init__(self, message: str, *, code: int = INVALID_REQUEST, data: Any = None) -> None:
        super().__init__(message, code=code, data=data)


class ToolExecutionError(BridgeError):
    """A tool raised while executing. Reported on the call, the session survives."""

    kind = ErrorKind.TOOL_EXECUTION
    status_code = 200

    def __init__(self, tool_name: str, original_exc: BaseException) -> None:
        upstream = str(original_exc) or original_exc.__class__.__name__
        super().__init__(
            f"Error executing tool '{tool_name}': {upstream}",
            code=SESSION_ERROR,
            data={"toolName": tool_name, "originalError": upstream},
            original_exc=original_exc,
        )
        self.tool_name = tool_name


class UpstreamModelError(BridgeError):
    """The model client failed. Carries an OpenAI-compatible error shape."""

    kind = ErrorKind.UPSTREAM_MODEL

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        error_type: str = "server_error",
        error_code: Optional[str] = "internal_error",
        original_exc: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_exc=original_exc)
        self.status_code = status_code
        self.error_type = error_type
        self.error_code = error_code

    def to_openai_error(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": None,
                "code": self.error_code,
            }
        }


def _attached_status(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_upstream_error(exc: Any) -> UpstreamModelError:
    """Map a model-client failure to an ``UpstreamModelError``.

    Classification is best effort: an attached HTTP status wins, otherwise the
    message text is searched for well-known markers.

    Args:
        exc: The exception raised by the model client, or the payload of an
            error event (exception, string, or dict with a ``message``).

    Returns:
        An ``UpstreamModelError`` with status, type and code filled in.
    """
    if isinstance(exc, UpstreamModelError):
        return exc

    if isinstance(exc, BaseException):
        message = str(exc) or exc.__class__.__name__
        status = _attached_status(exc)
        original = exc
    elif isinstance(exc, dict):
        message = str(exc.get("message") or exc)
        status = exc.get("status") if isinstance(exc.get("status"), int) else None
        original = None
    else:
        message = str(exc) if exc is not None else "An unknown error occurred."
        status = None
        original = None

    lowered = message.lower()

    if status in (401, 403) or "authentication" in lowered or "unauthorized" in lowered or "api key" in lowered:
        result = UpstreamModelError(
            message,
            status_code=401,
            error_type="authentication_error",
            error_code="invalid_api_key",
            original_exc=original,
        )
    elif status == 429 or "429" in message or "quota" in lowered or "rate limit" in lowered:
        result = UpstreamModelError(
            message,
            status_code=429,
            error_type="rate_limit_error",
            error_code="rate_limit_exceeded",
            original_exc=original,
        )
    elif (status is not None and 400 <= status < 500) or "400" in message or "invalid" in lowered:
        result = UpstreamModelError(
            message,
            status_code=status if status is not None and 400 <= status < 500 else 400,
            error_type="invalid_request_error",
            error_code="invalid_request",
            original_exc=original,
        )
    else:
        result = UpstreamModelError(
            message,
            status_code=500,
            error_type="server_error",
            error_code="server_error",
            original_exc=original,
        )

    logger.warning(
        "Upstream model error classified as %s (%s): %s",
        result.error_type, result.status_code, message,
    )
    return result


def jsonrpc_error(code: int, message: str, msg_id: Any = None, data: Any = None) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 error envelope. ``id`` may be null."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "error": error, "id": msg_id}
