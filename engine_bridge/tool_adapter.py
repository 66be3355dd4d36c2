"""Wrap engine tools as MCP tool endpoints."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from mcp.types import CallToolResult, TextContent, Tool
from pydantic import BaseModel

from engine_bridge.engine import EngineConfig, EngineEvent, EngineTool, EventType, ModelClient
from engine_bridge.errors import BridgeError, ToolExecutionError, classify_upstream_error
from engine_bridge.schema import translate, validate_arguments

logger = logging.getLogger("engine_bridge.tools")

UNSUPPORTED_PART_TEXT = "[Unsupported Part Type]"
MODEL_PROXY_TOOL_NAME = "call_model_api"


def _part_text(part: Any) -> Optional[str]:
    if isinstance(part, str):
        return part
    if isinstance(part, dict):
        text = part.get("text")
    else:
        text = getattr(part, "text", None)
    if isinstance(text, str) and text:
        return text
    return None


def to_content_blocks(result: Any) -> list[TextContent]:
    """Convert a tool result into MCP text content blocks.

    Accepts a plain string, a single part, a list of parts, or an object
    exposing ``llm_content``. Parts without text become a placeholder block.
    """
    content = getattr(result, "llm_content", result)

    if isinstance(content, str):
        return [TextContent(type="text", text=content)]

    parts = content if isinstance(content, (list, tuple)) else [content]
    blocks = []
    for part in parts:
        text = _part_text(part)
        blocks.append(TextContent(type="text", text=text if text is not None else UNSUPPORTED_PART_TEXT))
    return blocks


@dataclass
class ToolEndpoint:
    """A registered, callable MCP tool backed by an engine tool."""

    tool: EngineTool
    validator: type[BaseModel]
    name: str = field(init=False)

    def __post_init__(self):
        self.name = self.tool.name

    def definition(self) -> Tool:
        """Return the MCP tool definition advertised in tools/list."""
        schema = self.tool.parameter_schema
        if not isinstance(schema, dict) or not schema:
            schema = {"type": "object", "properties": {}}
        return Tool(
            name=self.tool.name,
            title=getattr(self.tool, "display_name", None) or None,
            description=self.tool.description or "",
            inputSchema=schema,
        )

    async def call(self, arguments: Any, signal: asyncio.Event) -> CallToolResult:
        """Validate, execute and convert one tool call.

        Raises:
            ProtocolError: when the arguments fail validation.
            ToolExecutionError: when the tool itself raised.
        """
        args = validate_arguments(self.validator, arguments)

        start = time.monotonic()
        logger.info("MCP tool call started: tool=%s args=%s", self.name, args)
        try:
            result = await self.tool.execute(args, signal)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error(
                "MCP tool call failed: tool=%s duration_ms=%d error=%s",
                self.name, duration_ms, exc,
            )
            raise ToolExecutionError(self.name, exc) from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "MCP tool call finished: tool=%s status=success duration_ms=%d",
            self.name, duration_ms,
        )
        return CallToolResult(content=to_content_blocks(result))


def rebind_tool(
    tool: EngineTool,
    engine_config: Optional[EngineConfig],
    model_override: Optional[str],
    rebindable: Iterable[str],
) -> EngineTool:
    """Return ``tool`` rebuilt against a config whose model is ``model_override``.

    Only tools named in ``rebindable`` are rebuilt, and only when an override
    is set and the tool knows how to bind a config. Every other tool is
    returned unchanged.
    """
    if not model_override or engine_config is None or tool.name not in set(rebindable):
        return tool
    with_config = getattr(tool, "with_config", None)
    if with_config is None:
        logger.warning("Tool %s cannot be rebound to model %s", tool.name, model_override)
        return tool
    logger.debug("Using model %r for tool %r", model_override, tool.name)
    return with_config(engine_config.with_model(model_override))


def adapt(
    tool: EngineTool,
    *,
    engine_config: Optional[EngineConfig] = None,
    model_override: Optional[str] = None,
    rebindable: Iterable[str] = (),
) -> ToolEndpoint:
    """Build the MCP endpoint for one engine tool."""
    bound = rebind_tool(tool, engine_config, model_override, rebindable)
    return ToolEndpoint(tool=bound, validator=translate(tool.parameter_schema, tool.name))


class ModelProxyTool:
    """Forward a raw conversation to the engine's model client.

    Lets an MCP client use the engine's authenticated model with its own
    tools and system prompt. Only the text of the reply is returned.
    """

    name = MODEL_PROXY_TOOL_NAME
    display_name = "Model API Proxy"
    description = (
        "Proxies a request to the model through the engine's authenticated client. "
        "Allows dynamic provision of tools and a system prompt for this call."
    )
    parameter_schema = {
        "type": "object",
        "properties": {
            "messages": {
                "description": "The conversation history to send, as internal content turns.",
            },
            "tools": {
                "type": "array",
                "description": "Function declarations made available to the model for this call.",
            },
            "systemInstruction": {
                "type": "string",
                "description": "A system prompt to guide the model's behavior for this call.",
            },
        },
        "required": ["messages"],
    }

    def __init__(self, model_client: ModelClient, engine_config: EngineConfig):
        self.model_client = model_client
        self.engine_config = engine_config

    async def execute(self, args: dict[str, Any], signal: asyncio.Event) -> str:
        messages = args.get("messages")
        if not isinstance(messages, list) or not messages:
            raise BridgeError("'messages' must be a non-empty list of content turns")

        last = messages[-1]
        parts = last.get("parts") if isinstance(last, dict) else None
        if not parts:
            raise BridgeError("The last message has no parts to send")

        config: dict[str, Any] = {}
        if args.get("tools"):
            config["tools"] = args["tools"]
        if args.get("systemInstruction"):
            config["systemInstruction"] = args["systemInstruction"]

        chat = self.model_client.start_chat(
            model=self.engine_config.get_model(),
            history=list(messages[:-1]),
            config=config,
        )

        text = []
        event: EngineEvent
        async for event in chat.send_message_stream(parts, signal):
            if signal.is_set():
                logger.info("Model proxy call aborted by the client")
                break
            if event.type == EventType.CONTENT and event.value:
                text.append(str(event.value))
            elif event.type == EventType.ERROR:
                raise classify_upstream_error(event.value)
        return "".join(text)
