"""
Boundary types for the conversational engine the bridge sits in front of.

The engine (tool registry, model client, configuration) is supplied by the
host application. The bridge only relies on the protocols below.
"""
from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol

__all__ = [
    "Content",
    "Part",
    "EventType",
    "EngineEvent",
    "ToolCallRequest",
    "EngineTool",
    "RebindableTool",
    "ToolRegistry",
    "EngineConfig",
    "ChatSession",
    "ModelClient",
    "Engine",
    "load_engine",
]

# Internal conversation turn: {"role": "user" | "model", "parts": [Part, ...]}
Content = dict[str, Any]
# One part of a turn: {"text"} | {"functionCall"} | {"functionResponse"} | {"inlineData"} | {"fileData"}
Part = dict[str, Any]


class EventType(str, Enum):
    CONTENT = "content"
    TOOL_CALL_REQUEST = "tool_call_request"
    THOUGHT = "thought"
    CHAT_COMPRESSED = "chat_compressed"
    FINISHED = "finished"
    ERROR = "error"
    USER_CANCELLED = "user_cancelled"


@dataclass(slots=True)
class ToolCallRequest:
    """A model-issued request to call a tool."""
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(slots=True)
class EngineEvent:
    """One item of the model client's event stream.

    ``value`` depends on ``type``: text for CONTENT, a ToolCallRequest for
    TOOL_CALL_REQUEST, an exception or message for ERROR.
    """
    type: EventType
    value: Any = None


class EngineTool(Protocol):
    name: str
    display_name: str
    description: str
    parameter_schema: dict[str, Any] | None

    async def execute(self, args: dict[str, Any], signal: asyncio.Event) -> Any:
        """Run the tool. Returns a string, a part, or a list of parts."""
        ...


class RebindableTool(EngineTool, Protocol):
    def with_config(self, config: "EngineConfig") -> EngineTool:
        """Return a new instance of this tool bound to ``config``."""
        ...


class ToolRegistry(Protocol):
    def get_all_tools(self) -> list[EngineTool]: ...


class EngineConfig(Protocol):
    def get_model(self) -> str: ...

    def with_model(self, model: str) -> "EngineConfig":
        """Return a copy of the configuration with the model replaced."""
        ...


class ChatSession(Protocol):
    def send_message_stream(
        self, message: list[Part], signal: asyncio.Event
    ) -> AsyncIterator[EngineEvent]: ...


class ModelClient(Protocol):
    def start_chat(
        self,
        *,
        model: str,
        history: list[Content],
        config: dict[str, Any],
    ) -> ChatSession:
        """Create a fresh, throwaway conversation seeded with ``history``."""
        ...


class Engine(Protocol):
    config: EngineConfig
    tool_registry: ToolRegistry
    model_client: ModelClient


def load_engine(path: str) -> Engine:
    """Import ``module:factory`` and call the factory to build the engine."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"ENGINE_FACTORY must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory()
