"""Shared fixtures for the bridge tests."""
import pytest
from fastapi.testclient import TestClient

from engine_bridge.config import Config
from engine_bridge.fakes import FakeEngine, FakeTool
from engine_bridge.main import create_app


@pytest.fixture
def echo_tool():
    return FakeTool(
        "echo",
        schema={
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "times": {"type": "integer"},
            },
            "required": ["text"],
        },
        result="echoed",
    )


@pytest.fixture
def engine(echo_tool):
    return FakeEngine(tools=[echo_tool, FakeTool("broken", error=RuntimeError("disk on fire"))])


@pytest.fixture
def client(engine):
    app = create_app(engine, Config)
    with TestClient(app) as test_client:
        yield test_client
