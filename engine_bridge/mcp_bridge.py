"""Per-session MCP tool server and JSON-RPC protocol handler."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    Implementation,
    InitializeResult,
    LoggingCapability,
    ServerCapabilities,
    ToolsCapability,
)

from engine_bridge.engine import Engine
from engine_bridge.errors import BridgeError, ProtocolError, jsonrpc_error
from engine_bridge.tool_adapter import ModelProxyTool, ToolEndpoint, adapt

logger = logging.getLogger("engine_bridge.mcp")


class ToolServer:
    """
    The tool table of one MCP session.

    Built from a snapshot of the engine's tools at session creation; later
    registry changes do not leak into an existing session.
    """

    def __init__(self, endpoints: Iterable[ToolEndpoint]):
        self.tools: dict[str, ToolEndpoint] = {}
        for endpoint in endpoints:
            if endpoint.name in self.tools:
                logger.warning("Duplicate tool %r, keeping the first registration", endpoint.name)
                continue
            self.tools[endpoint.name] = endpoint

    @classmethod
    def from_engine(
        cls,
        engine: Engine,
        *,
        tools_model: Optional[str] = None,
        rebindable: Iterable[str] = (),
        enable_model_proxy: bool = False,
    ) -> "ToolServer":
        """Snapshot every engine tool into a new tool server."""
        rebindable = tuple(rebindable)
        endpoints = [
            adapt(
                tool,
                engine_config=engine.config,
                model_override=tools_model,
                rebindable=rebindable,
            )
            for tool in engine.tool_registry.get_all_tools()
        ]
        if enable_model_proxy:
            endpoints.append(adapt(ModelProxyTool(engine.model_client, engine.config)))
        return cls(endpoints)

    async def list_tools(self) -> list[dict[str, Any]]:
        """Get list of available tools."""
        return [
            endpoint.definition().model_dump(mode="json", by_alias=True, exclude_none=True)
            for endpoint in self.tools.values()
        ]

    async def call_tool(self, tool_name: str, arguments: Any, signal: asyncio.Event) -> dict[str, Any]:
        """Call a tool by name."""
        endpoint = self.tools.get(tool_name)
        if endpoint is None:
            raise ProtocolError(f"Unknown tool: {tool_name}", code=INVALID_PARAMS)
        result = await endpoint.call(arguments, signal)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)


class McpSession:
    """
    JSON-RPC handler bound to one session id and one tool server.

    Handles the subset of MCP a tool server needs: initialize, ping,
    tools/list, tools/call and logging/setLevel. Notifications are accepted
    and produce no response.
    """

    def __init__(self, session_id: str, tool_server: ToolServer, server_info: Implementation):
        self.session_id = session_id
        self.tool_server = tool_server
        self.server_info = server_info
        self.initialized = False
        # Set when the transport closes; in-flight tools observe it
        self.abort_signal = asyncio.Event()

    def close(self) -> None:
        self.abort_signal.set()

    async def handle(self, payload: Any) -> Any:
        """Handle one JSON-RPC message or a batch.

        Returns the response envelope(s), or ``None`` when the payload held
        only notifications.
        """
        if isinstance(payload, list):
            if not payload:
                return jsonrpc_error(INVALID_REQUEST, "Empty batch")
            responses = [await self._handle_message(message) for message in payload]
            responses = [response for response in responses if response is not None]
            return responses or None
        return await self._handle_message(payload)

    async def _handle_message(self, message: Any) -> Optional[dict[str, Any]]:
        if not isinstance(message, dict) or "method" not in message:
            if isinstance(message, dict) and ("result" in message or "error" in message):
                # Responses to server-initiated requests; nothing is outstanding
                return None
            return jsonrpc_error(INVALID_REQUEST, "Invalid JSON-RPC message")

        method = message.get("method")
        msg_id = message.get("id")
        params = message.get("params")
        if params is None:
            params = {}

        if msg_id is None:
            logger.debug("Session %s notification: %s", self.session_id, method)
            return None

        try:
            if not isinstance(params, dict):
                raise ProtocolError("params must be an object", code=INVALID_PARAMS)
            result = await self._dispatch(method, params)
        except BridgeError as exc:
            logger.warning("Session %s %s failed: %s", self.session_id, method, exc.message)
            return jsonrpc_error(exc.code, exc.message, msg_id, exc.data)
        except McpError as exc:
            return jsonrpc_error(exc.error.code, exc.error.message, msg_id, exc.error.data)
        except Exception as exc:
            logger.exception("Session %s %s raised", self.session_id, method)
            return jsonrpc_error(INTERNAL_ERROR, f"Internal error: {exc}", msg_id)

        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    async def _dispatch(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == "initialize":
            return self._initialize(params)

        elif method == "ping":
            return {}

        elif method == "tools/list":
            tools = await self.tool_server.list_tools()
            logger.debug("Session %s returning %d tools", self.session_id, len(tools))
            return {"tools": tools}

        elif method == "tools/call":
            tool_name = params.get("name")
            if not isinstance(tool_name, str):
                raise ProtocolError("tools/call requires a tool name", code=INVALID_PARAMS)
            return await self.tool_server.call_tool(
                tool_name, params.get("arguments") or {}, self.abort_signal
            )

        elif method == "logging/setLevel":
            return {}

        raise ProtocolError(f"Method not found: {method}", code=METHOD_NOT_FOUND)

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.initialized:
            raise ProtocolError("Session already initialized")

        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION

        result = InitializeResult(
            protocolVersion=version,
            capabilities=ServerCapabilities(
                tools=ToolsCapability(listChanged=False),
                logging=LoggingCapability(),
            ),
            serverInfo=self.server_info,
        )
        self.initialized = True
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)


def is_initialize_request(payload: Any) -> bool:
    """True when the payload (or any message of a batch) is an initialize request."""
    if isinstance(payload, list):
        return any(is_initialize_request(message) for message in payload)
    return (
        isinstance(payload, dict)
        and payload.get("method") == "initialize"
        and payload.get("id") is not None
    )
