"""
Translation between OpenAI-style chat messages and the engine's turns.

The chat API uses flat ``{role, content, tool_calls, tool_call_id}`` messages;
the engine uses ``{role: user|model, parts: [...]}`` turns. A tool result on
the chat side only carries the call id, so the id generated for each tool
call embeds the function name: ``call_<functionName>_<hex suffix>``.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from engine_bridge.engine import Content, Part
from engine_bridge.errors import ProtocolError

logger = logging.getLogger("engine_bridge.messages")

__all__ = [
    "UNKNOWN_TOOL_NAME",
    "make_tool_call_id",
    "parse_tool_call_id",
    "to_internal",
    "tool_response_payload",
    "sanitize_schema",
    "to_internal_tools",
    "to_tool_config",
    "ChatRequest",
    "build_chat_request",
]

UNKNOWN_TOOL_NAME = "unknown_tool_from_id"
TOOL_CALL_PREFIX = "call_"
DEFAULT_IMAGE_MIME = "image/jpeg"

# JSON Schema keys the engine's function declarations reject
UNSUPPORTED_SCHEMA_KEYS = frozenset({
    "$schema",
    "$id",
    "$ref",
    "$defs",
    "$comment",
    "definitions",
    "additionalProperties",
    "unevaluatedProperties",
    "patternProperties",
    "examples",
    "const",
    "strict",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "readOnly",
    "writeOnly",
    "deprecated",
    "dependencies",
    "if",
    "then",
    "else",
    "not",
})


# --- tool call identity ---

def make_tool_call_id(function_name: str) -> str:
    """Generate a call id that ``parse_tool_call_id`` maps back to ``function_name``."""
    # uuid4().hex never contains "_", so the last "_" always ends the name
    return f"{TOOL_CALL_PREFIX}{function_name}_{uuid.uuid4().hex}"


def parse_tool_call_id(tool_call_id: Optional[str]) -> str:
    """Recover the function name from a call id, or ``UNKNOWN_TOOL_NAME``."""
    if not tool_call_id or not tool_call_id.startswith(TOOL_CALL_PREFIX):
        return UNKNOWN_TOOL_NAME
    name, sep, suffix = tool_call_id[len(TOOL_CALL_PREFIX):].rpartition("_")
    if not sep or not name or not suffix:
        return UNKNOWN_TOOL_NAME
    return name


# --- messages ---

def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content)


def tool_response_payload(content: Any) -> dict[str, Any]:
    """Shape a tool result for a functionResponse, which must be an object.

    JSON objects pass through; anything else (arrays, primitives, null,
    unparseable text) is wrapped under ``output``.
    """
    text = _content_text(content)
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return {"output": text}
    if isinstance(parsed, dict):
        return parsed
    return {"output": parsed}


def _image_part(image_url: Any) -> Optional[Part]:
    url = image_url.get("url") if isinstance(image_url, dict) else image_url
    if not isinstance(url, str) or not url:
        return None

    if url.startswith("data:"):
        header, sep, data = url.partition(",")
        if not sep or not data:
            logger.warning("Dropping malformed data URI image part")
            return None
        mime_type = header[len("data:"):].split(";")[0] or DEFAULT_IMAGE_MIME
        return {"inlineData": {"mimeType": mime_type, "data": data}}

    return {"fileData": {"mimeType": DEFAULT_IMAGE_MIME, "fileUri": url}}


def _user_parts(content: Any) -> list[Part]:
    if content is None:
        return []
    if isinstance(content, str):
        return [{"text": content}] if content else []
    if not isinstance(content, list):
        text = str(content)
        return [{"text": text}] if text else []

    parts: list[Part] = []
    for item in content:
        if isinstance(item, str):
            if item:
                parts.append({"text": item})
            continue
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            if item.get("text"):
                parts.append({"text": item["text"]})
        elif kind == "image_url":
            part = _image_part(item.get("image_url"))
            if part is not None:
                parts.append(part)
        else:
            logger.debug("Skipping unsupported content part type %r", kind)
    return parts


def _function_call_part(tool_call: Any) -> Optional[Part]:
    if not isinstance(tool_call, dict):
        return None
    function = tool_call.get("function") or {}
    name = function.get("name")
    if not name:
        logger.warning("Dropping tool call without a function name: %r", tool_call)
        return None

    raw_args = function.get("arguments")
    if isinstance(raw_args, dict):
        args = raw_args
    elif raw_args is None or (isinstance(raw_args, str) and not raw_args.strip()):
        args = {}
    else:
        try:
            args = json.loads(raw_args)
        except (TypeError, ValueError):
            logger.warning("Dropping tool call %s: arguments are not valid JSON", name)
            return None
        if not isinstance(args, dict):
            args = {"value": args}

    return {"functionCall": {"name": name, "args": args}}


def to_internal(message: dict[str, Any]) -> Content:
    """Translate one chat message into an engine turn."""
    role = message.get("role")
    content = message.get("content")

    if role == "tool":
        return {
            "role": "user",
            "parts": [{
                "functionResponse": {
                    "name": parse_tool_call_id(message.get("tool_call_id")),
                    "response": tool_response_payload(content),
                }
            }],
        }

    if role == "assistant":
        text = _content_text(content)
        parts: list[Part] = [{"text": text}] if text else []
        for tool_call in message.get("tool_calls") or []:
            part = _function_call_part(tool_call)
            if part is not None:
                parts.append(part)
        return {"role": "model", "parts": parts}

    return {"role": "user", "parts": _user_parts(content)}


# --- tools ---

def sanitize_schema(schema: Any) -> Any:
    """Recursively strip keys the engine's schema dialect does not accept."""
    if isinstance(schema, list):
        return [sanitize_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    cleaned = {}
    for key, value in schema.items():
        if key in UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: sanitize_schema(prop) for name, prop in value.items()}
        elif key in ("items", "anyOf"):
            cleaned[key] = sanitize_schema(value)
        else:
            cleaned[key] = value
    return cleaned


def to_internal_tools(tools: Optional[Sequence[dict[str, Any]]]) -> Optional[list[dict[str, Any]]]:
    """Flatten chat tool declarations into one engine tool with function declarations."""
    if not tools:
        return None

    declarations = []
    for tool in tools:
        if not isinstance(tool, dict) or tool.get("type") != "function" or not tool.get("function"):
            continue
        function = tool["function"]
        declaration: dict[str, Any] = {"name": function.get("name")}
        if function.get("description"):
            declaration["description"] = function["description"]
        if function.get("parameters"):
            declaration["parameters"] = sanitize_schema(function["parameters"])
        declarations.append(declaration)

    if not declarations:
        return None
    return [{"functionDeclarations": declarations}]


def to_tool_config(tool_choice: Any) -> Optional[dict[str, Any]]:
    """Map ``tool_choice`` to the engine's function calling config."""
    if tool_choice is None or tool_choice == "auto":
        return None

    if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
        name = (tool_choice.get("function") or {}).get("name")
        config: dict[str, Any] = {"mode": "ANY"}
        if name:
            config["allowedFunctionNames"] = [name]
        return {"functionCallingConfig": config}

    return {"functionCallingConfig": {"mode": "ANY"}}


# --- request assembly ---

@dataclass
class ChatRequest:
    """Everything needed to start one throwaway engine chat."""
    history: list[Content]
    message: list[Part]
    config: dict[str, Any]


def build_chat_request(
    messages: Sequence[dict[str, Any]],
    tools: Optional[Sequence[dict[str, Any]]] = None,
    tool_choice: Any = None,
) -> ChatRequest:
    """Split translated messages into history and the message to send.

    Raises:
        ProtocolError: when there is no message to send.
    """
    turns = [to_internal(message) for message in messages]
    if not turns:
        raise ProtocolError("No message to send.")

    last = turns.pop()
    if not last["parts"]:
        raise ProtocolError("The last message has no content to send.")

    history = [turn for turn in turns if turn["parts"]]

    config: dict[str, Any] = {}
    internal_tools = to_internal_tools(tools)
    if internal_tools:
        config["tools"] = internal_tools
    tool_config = to_tool_config(tool_choice)
    if tool_config:
        config["toolConfig"] = tool_config

    return ChatRequest(history=history, message=last["parts"], config=config)
