"""Endpoint tests for the MCP and OpenAI-compatible transports."""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from engine_bridge.config import Config
from engine_bridge.engine import EngineEvent, EventType
from engine_bridge.fakes import (
    FakeEngine,
    FakeModelClient,
    StalledModelClient,
    text_events,
    tool_call_event,
)
from engine_bridge.main import create_app
from engine_bridge.stream import DONE_FRAME


INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "0"},
    },
}


def rpc(method, params=None, msg_id=2):
    message = {"jsonrpc": "2.0", "id": msg_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def sse_payloads(body):
    frames = [frame for frame in body.split("\n\n") if frame]
    assert frames[-1] + "\n\n" == DONE_FRAME
    return [json.loads(frame[len("data: "):]) for frame in frames[:-1]]


def chat_client(model_client):
    return TestClient(create_app(FakeEngine(model_client=model_client), Config))


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert response.json()["sessions"] == 0


class TestMcpEndpoint:
    def test_request_without_session(self, client):
        response = client.post("/mcp", json=rpc("tools/list"))
        assert response.status_code == 400
        assert response.json() == {
            "jsonrpc": "2.0",
            "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
            "id": None,
        }
        assert client.get("/").json()["sessions"] == 0

    def test_request_with_unknown_session(self, client):
        response = client.post("/mcp", json=rpc("tools/list"), headers={"Mcp-Session-Id": "bogus"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32000

    def test_invalid_json(self, client):
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_session_lifecycle(self, client, echo_tool):
        response = client.post("/mcp", json=INITIALIZE)
        assert response.status_code == 200
        session_id = response.headers["mcp-session-id"]
        assert response.json()["result"]["serverInfo"]["name"] == Config.SERVER_NAME
        headers = {"Mcp-Session-Id": session_id}

        notified = client.post(
            "/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=headers
        )
        assert notified.status_code == 202

        listed = client.post("/mcp", json=rpc("tools/list"), headers=headers)
        assert listed.headers["mcp-session-id"] == session_id
        assert [tool["name"] for tool in listed.json()["result"]["tools"]] == ["echo", "broken"]

        called = client.post(
            "/mcp",
            json=rpc("tools/call", {"name": "echo", "arguments": {"text": "hi"}}, msg_id=3),
            headers=headers,
        )
        assert called.json() == {
            "jsonrpc": "2.0",
            "id": 3,
            "result": {"content": [{"type": "text", "text": "echoed"}], "isError": False},
        }

        failed = client.post(
            "/mcp", json=rpc("tools/call", {"name": "broken"}, msg_id=4), headers=headers
        )
        assert failed.status_code == 200
        assert failed.json()["error"]["data"] == {"toolName": "broken", "originalError": "disk on fire"}

        assert client.delete("/mcp", headers=headers).status_code == 204
        after = client.post("/mcp", json=rpc("tools/list"), headers=headers)
        assert after.status_code == 400

    def test_two_sessions_are_distinct(self, client):
        first = client.post("/mcp", json=INITIALIZE).headers["mcp-session-id"]
        second = client.post("/mcp", json=INITIALIZE).headers["mcp-session-id"]
        assert first != second
        assert client.get("/").json()["sessions"] == 2

    def test_delete_unknown_session(self, client):
        response = client.delete("/mcp", headers={"Mcp-Session-Id": "bogus"})
        assert response.status_code == 404

    def test_get_without_session(self, client):
        assert client.get("/mcp").status_code == 400

    def test_options(self, client):
        response = client.options("/mcp")
        assert response.status_code == 200
        assert "DELETE" in response.headers["allow"]


class TestChatCompletions:
    def test_streams_text(self):
        model_client = FakeModelClient(text_events("Hel", "lo"))
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions",
                json={
                    "model": "gemini-2.5-flash",
                    "messages": [
                        {"role": "system", "content": "be brief"},
                        {"role": "user", "content": "hi"},
                    ],
                },
            )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        chunks = sse_payloads(response.text)
        assert [chunk["choices"][0]["delta"].get("content") for chunk in chunks] == ["Hel", "lo", None]
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        assert len({chunk["id"] for chunk in chunks}) == 1

        started = model_client.chats[0]
        assert started["model"] == "gemini-2.5-flash"
        assert started["history"] == [{"role": "user", "parts": [{"text": "be brief"}]}]
        assert started["chat"].sent == [{"text": "hi"}]

    def test_streams_tool_call(self):
        model_client = FakeModelClient([tool_call_event("lookup", {"q": "x"}), EngineEvent(EventType.FINISHED)])
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions",
                json={
                    "model": "m",
                    "messages": [{"role": "user", "content": "find x"}],
                    "tools": [{"type": "function", "function": {"name": "lookup", "parameters": {"type": "object"}}}],
                    "tool_choice": {"type": "function", "function": {"name": "lookup"}},
                },
            )
        chunks = sse_payloads(response.text)
        assert len(chunks) == 3
        assert chunks[0]["choices"][0]["delta"]["tool_calls"][0]["function"]["name"] == "lookup"
        assert chunks[-1]["choices"][0]["finish_reason"] == "tool_calls"
        assert model_client.chats[0]["config"]["toolConfig"] == {
            "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["lookup"]}
        }

    def test_tool_result_round_trip(self):
        model_client = FakeModelClient(text_events("It is sunny."))
        with chat_client(model_client) as client:
            client.post(
                "/v1/chat/completions",
                json={
                    "model": "m",
                    "messages": [
                        {"role": "user", "content": "weather?"},
                        {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [{
                                "id": "call_get_weather_0123abcd",
                                "type": "function",
                                "function": {"name": "get_weather", "arguments": "{}"},
                            }],
                        },
                        {"role": "tool", "tool_call_id": "call_get_weather_0123abcd", "content": "[\"sunny\"]"},
                    ],
                },
            )
        assert model_client.chats[0]["chat"].sent == [
            {"functionResponse": {"name": "get_weather", "response": {"output": ["sunny"]}}}
        ]

    def test_non_streaming_is_rejected(self):
        model_client = FakeModelClient(text_events("never"))
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions",
                json={"model": "m", "stream": False, "messages": [{"role": "user", "content": "hi"}]},
            )
        assert response.status_code == 501
        assert not response.headers["content-type"].startswith("text/event-stream")
        assert response.json()["error"]["code"] == "not_implemented"
        assert model_client.chats == []

    @pytest.mark.parametrize("body", [
        {"model": "m"},
        {"model": "m", "messages": []},
        {"model": "m", "messages": [{"role": "wizard", "content": "hi"}]},
        {"messages": [{"role": "user", "content": "hi"}]},
    ])
    def test_malformed_request(self, client, body):
        response = client.post("/v1/chat/completions", json=body)
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"

    def test_nothing_to_send(self, client):
        response = client.post(
            "/v1/chat/completions",
            json={"model": "m", "messages": [{"role": "user", "content": ""}]},
        )
        assert response.status_code == 400

    def test_rate_limit_before_streaming(self):
        model_client = FakeModelClient([EngineEvent(EventType.ERROR, "429 Resource exhausted: quota")])
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]}
            )
        assert response.status_code == 429
        assert response.json()["error"]["type"] == "rate_limit_error"

    def test_auth_failure_before_streaming(self):
        model_client = FakeModelClient(start_error=RuntimeError("Unauthorized: API key not valid"))
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]}
            )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_error_after_streaming_began(self):
        model_client = FakeModelClient(
            [EngineEvent(EventType.CONTENT, "partial")], error=RuntimeError("connection reset")
        )
        with chat_client(model_client) as client:
            response = client.post(
                "/v1/chat/completions", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]}
            )
        assert response.status_code == 200
        chunks = sse_payloads(response.text)
        assert chunks[0]["choices"][0]["delta"]["content"] == "partial"
        assert chunks[-1]["error"]["type"] == "server_error"


class TestModels:
    def test_lists_current_model(self, client):
        response = client.get("/v1/models")
        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "list"
        ids = [model["id"] for model in body["data"]]
        assert "gemini-2.5-pro" in ids
        assert len(ids) == len(set(ids))


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_mid_stream_aborts_engine(self):
        model_client = StalledModelClient()
        app = create_app(FakeEngine(model_client=model_client), Config)
        body = json.dumps({"model": "m", "messages": [{"role": "user", "content": "hi"}]}).encode()

        incoming = [{"type": "http.request", "body": body, "more_body": False}]
        first_chunk = asyncio.Event()
        sent = []

        async def receive():
            if incoming:
                return incoming.pop(0)
            # The client hangs up once it has seen the first frame
            await first_chunk.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)
            if message["type"] == "http.response.body" and message.get("body"):
                first_chunk.set()

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/v1/chat/completions",
            "raw_path": b"/v1/chat/completions",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        await asyncio.wait_for(app(scope, receive, send), timeout=5)

        assert sent[0]["status"] == 200
        assert b"partial" in b"".join(message.get("body", b"") for message in sent[1:])
        assert model_client.chat.signal.is_set()
        assert model_client.chat.closed
