"""In-memory stand-ins for the engine collaborator, shared by the tests."""
import asyncio

from engine_bridge.engine import EngineEvent, EventType, ToolCallRequest


class FakeConfig:
    def __init__(self, model="gemini-2.5-pro"):
        self.model = model

    def get_model(self):
        return self.model

    def with_model(self, model):
        return FakeConfig(model)


class FakeTool:
    def __init__(self, name, schema=None, result="ok", error=None, description="A fake tool", config=None):
        self.name = name
        self.display_name = name.replace("_", " ").title()
        self.description = description
        self.parameter_schema = schema
        self.result = result
        self.error = error
        self.config = config
        self.calls = []

    def with_config(self, config):
        return FakeTool(
            self.name,
            self.parameter_schema,
            result=self.result,
            error=self.error,
            description=self.description,
            config=config,
        )

    async def execute(self, args, signal):
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        return self.result


class FakeRegistry:
    def __init__(self, tools=()):
        self.tools = list(tools)

    def get_all_tools(self):
        return list(self.tools)


class FakeChat:
    def __init__(self, events, error=None):
        self.events = events
        self.error = error
        self.sent = None

    async def send_message_stream(self, message, signal):
        self.sent = message
        for event in self.events:
            await asyncio.sleep(0)
            yield event
        if self.error is not None:
            raise self.error


class FakeModelClient:
    """Replays a scripted event list and records every chat it starts."""

    def __init__(self, events=(), error=None, start_error=None):
        self.events = list(events)
        self.error = error
        self.start_error = start_error
        self.chats = []

    def start_chat(self, *, model, history, config):
        if self.start_error is not None:
            raise self.start_error
        chat = FakeChat(self.events, self.error)
        self.chats.append({"model": model, "history": history, "config": config, "chat": chat})
        return chat


class FakeEngine:
    def __init__(self, tools=(), model_client=None, config=None):
        self.config = config or FakeConfig()
        self.tool_registry = FakeRegistry(tools)
        self.model_client = model_client or FakeModelClient()


def text_events(*chunks):
    return [EngineEvent(EventType.CONTENT, chunk) for chunk in chunks] + [EngineEvent(EventType.FINISHED)]


def tool_call_event(name, args):
    return EngineEvent(EventType.TOOL_CALL_REQUEST, ToolCallRequest(name=name, args=args))




class StalledChat:
    """Yields one content event, then waits until it is cancelled."""

    def __init__(self):
        self.signal = None
        self.closed = False

    def send_message_stream(self, message, signal):
        self.signal = signal
        return self._events()

    async def _events(self):
        try:
            yield EngineEvent(EventType.CONTENT, "partial")
            await asyncio.Event().wait()
        finally:
            self.closed = True


class StalledModelClient:
    def __init__(self):
        self.chat = StalledChat()

    def start_chat(self, *, model, history, config):
        return self.chat
