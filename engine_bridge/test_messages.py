"""Tests for chat message translation."""
import pytest

from engine_bridge.errors import ProtocolError
from engine_bridge.messages import (
    UNKNOWN_TOOL_NAME,
    build_chat_request,
    make_tool_call_id,
    parse_tool_call_id,
    sanitize_schema,
    to_internal,
    to_internal_tools,
    to_tool_config,
    tool_response_payload,
)


class TestToolCallIds:
    @pytest.mark.parametrize("name", ["search", "google_web_search", "read_many_files", "a_"])
    def test_round_trip(self, name):
        call_id = make_tool_call_id(name)
        assert call_id.startswith("call_")
        assert parse_tool_call_id(call_id) == name

    def test_ids_are_unique(self):
        assert make_tool_call_id("x") != make_tool_call_id("x")

    @pytest.mark.parametrize("call_id", [None, "", "toolu_123", "call_", "call_nosuffix", "call__abc"])
    def test_unparseable(self, call_id):
        assert parse_tool_call_id(call_id) == UNKNOWN_TOOL_NAME


class TestToolResponsePayload:
    def test_object_passes_through(self):
        assert tool_response_payload('{"temp": 21}') == {"temp": 21}

    def test_array_is_wrapped(self):
        assert tool_response_payload("[1, 2, 3]") == {"output": [1, 2, 3]}

    def test_primitives_are_wrapped(self):
        assert tool_response_payload("42") == {"output": 42}
        assert tool_response_payload("null") == {"output": None}

    def test_plain_text_is_wrapped(self):
        assert tool_response_payload("sunny, 21C") == {"output": "sunny, 21C"}

    def test_text_parts(self):
        content = [{"type": "text", "text": '{"a": '}, {"type": "text", "text": "1}"}]
        assert tool_response_payload(content) == {"a": 1}


class TestToInternal:
    def test_user_text(self):
        assert to_internal({"role": "user", "content": "hi"}) == {"role": "user", "parts": [{"text": "hi"}]}

    def test_system_becomes_user(self):
        assert to_internal({"role": "system", "content": "rules"})["role"] == "user"

    def test_tool_message(self):
        call_id = make_tool_call_id("get_weather")
        turn = to_internal({"role": "tool", "tool_call_id": call_id, "content": "[1]"})
        assert turn == {
            "role": "user",
            "parts": [{"functionResponse": {"name": "get_weather", "response": {"output": [1]}}}],
        }

    def test_tool_message_with_foreign_id(self):
        turn = to_internal({"role": "tool", "tool_call_id": "abc", "content": "{}"})
        assert turn["parts"][0]["functionResponse"]["name"] == UNKNOWN_TOOL_NAME

    def test_assistant_with_tool_calls(self):
        turn = to_internal({
            "role": "assistant",
            "content": "Let me check.",
            "tool_calls": [
                {"id": "call_x_1", "type": "function", "function": {"name": "lookup", "arguments": '{"q": "a"}'}},
                {"id": "call_y_2", "type": "function", "function": {"name": "broken", "arguments": "{not json"}},
            ],
        })
        assert turn == {
            "role": "model",
            "parts": [
                {"text": "Let me check."},
                {"functionCall": {"name": "lookup", "args": {"q": "a"}}},
            ],
        }

    def test_images(self):
        turn = to_internal({
            "role": "user",
            "content": [
                {"type": "text", "text": "what is this"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                {"type": "image_url", "image_url": {"url": "https://example.com/cat"}},
                {"type": "input_audio", "input_audio": {}},
            ],
        })
        assert turn["parts"] == [
            {"text": "what is this"},
            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
            {"fileData": {"mimeType": "image/jpeg", "fileUri": "https://example.com/cat"}},
        ]


class TestTools:
    def test_sanitize_schema(self):
        schema = {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "items": {"type": "array", "items": {"type": "string", "const": "x"}},
                "choice": {"anyOf": [{"type": "string", "examples": ["a"]}, {"type": "integer"}]},
            },
        }
        assert sanitize_schema(schema) == {
            "type": "object",
            "properties": {
                "items": {"type": "array", "items": {"type": "string"}},
                "choice": {"anyOf": [{"type": "string"}, {"type": "integer"}]},
            },
        }

    def test_to_internal_tools(self):
        tools = [
            {"type": "function", "function": {"name": "a", "description": "A", "parameters": {"type": "object"}}},
            {"type": "retrieval"},
            {"type": "function", "function": {"name": "b"}},
        ]
        assert to_internal_tools(tools) == [{
            "functionDeclarations": [
                {"name": "a", "description": "A", "parameters": {"type": "object"}},
                {"name": "b"},
            ]
        }]
        assert to_internal_tools([]) is None

    @pytest.mark.parametrize("choice, expected", [
        (None, None),
        ("auto", None),
        ("none", {"functionCallingConfig": {"mode": "ANY"}}),
        ("required", {"functionCallingConfig": {"mode": "ANY"}}),
        (
            {"type": "function", "function": {"name": "lookup"}},
            {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["lookup"]}},
        ),
    ])
    def test_tool_config(self, choice, expected):
        assert to_tool_config(choice) == expected


class TestBuildChatRequest:
    def test_splits_history_and_message(self):
        request = build_chat_request(
            [
                {"role": "system", "content": "be nice"},
                {"role": "assistant", "content": ""},
                {"role": "user", "content": "hi"},
            ],
            tools=[{"type": "function", "function": {"name": "a"}}],
            tool_choice="required",
        )
        assert request.history == [{"role": "user", "parts": [{"text": "be nice"}]}]
        assert request.message == [{"text": "hi"}]
        assert request.config == {
            "tools": [{"functionDeclarations": [{"name": "a"}]}],
            "toolConfig": {"functionCallingConfig": {"mode": "ANY"}},
        }

    def test_no_tools_no_config(self):
        assert build_chat_request([{"role": "user", "content": "hi"}]).config == {}

    def test_empty(self):
        with pytest.raises(ProtocolError):
            build_chat_request([])

    def test_last_message_without_content(self):
        with pytest.raises(ProtocolError):
            build_chat_request([{"role": "user", "content": "hi"}, {"role": "assistant", "content": None}])
