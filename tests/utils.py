import json
from contextlib import asynccontextmanager
from typing import Any, Optional

import anyio
import httpx
from mcp import types

from src.assistantmcp.dispatcher import RequestDispatcher
from src.assistantmcp.framing import MessageFramer
from src.assistantmcp.pinecone_client import PineconeAssistantClient
from src.assistantmcp.settings import AssistantSettings
from src.assistantmcp.tools import ToolRegistry, build_tool_registry

RESPONSE_TIMEOUT = 2.0


def make_settings(**overrides: Any) -> AssistantSettings:
    values = {
        "pinecone_api_key": "test-api-key",
        "pinecone_assistant_host": "https://assistant.test",
        "pinecone_assistant_name": "test-assistant",
    }
    values.update(overrides)
    return AssistantSettings(**values)


def make_mock_client(handler, settings: Optional[AssistantSettings] = None, **kwargs) -> PineconeAssistantClient:
    """PineconeAssistantClient whose HTTP traffic is answered by handler."""
    settings = settings or make_settings()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PineconeAssistantClient(
        api_key=settings.pinecone_api_key.get_secret_value(),
        base_url=settings.pinecone_assistant_host,
        timeout=kwargs.pop("timeout", settings.request_timeout),
        http_client=http_client,
    )


def make_registry(handler, settings: Optional[AssistantSettings] = None) -> ToolRegistry:
    settings = settings or make_settings()
    return build_tool_registry(make_mock_client(handler, settings), settings)


def request(request_id, method: str, params: Optional[dict] = None) -> dict:
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def notification(method: str, params: Optional[dict] = None) -> dict:
    message = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def initialize_request(request_id=0, protocol_version: str = "2024-11-05") -> dict:
    return request(
        request_id,
        "initialize",
        {
            "protocolVersion": protocol_version,
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "1.0"},
        },
    )


def call_request(request_id, arguments: dict, name: str = "assistant_context") -> dict:
    return request(request_id, "tools/call", {"name": name, "arguments": arguments})


class SessionHarness:
    """Drives a RequestDispatcher through in-memory byte streams."""

    def __init__(self, registry: ToolRegistry, **dispatcher_kwargs: Any):
        self.input_send, input_receive = anyio.create_memory_object_stream(100)
        output_send, self.output_receive = anyio.create_memory_object_stream(100)
        self.framer = MessageFramer(input_receive, output_send)
        self.dispatcher = RequestDispatcher(
            registry=registry,
            framer=self.framer,
            server_info=types.Implementation(name="pinecone-assistant", version="test"),
            **dispatcher_kwargs,
        )
        self.closed = anyio.Event()

    async def serve(self) -> None:
        try:
            await self.dispatcher.serve()
        finally:
            self.closed.set()

    async def send(self, message) -> None:
        if isinstance(message, dict):
            message = json.dumps(message).encode() + b"\n"
        await self.input_send.send(message)

    async def receive(self) -> dict:
        with anyio.fail_after(RESPONSE_TIMEOUT):
            frame = await self.output_receive.receive()
        assert frame.endswith(b"\n") and frame.count(b"\n") == 1
        return json.loads(frame)

    def assert_no_output(self) -> None:
        try:
            frame = self.output_receive.receive_nowait()
        except anyio.WouldBlock:
            return
        raise AssertionError(f"Unexpected frame: {frame!r}")

    async def initialize(self) -> dict:
        await self.send(initialize_request())
        response = await self.receive()
        await self.send(notification("notifications/initialized"))
        return response

    async def close_input(self) -> None:
        await self.input_send.aclose()

    async def wait_closed(self) -> None:
        with anyio.fail_after(RESPONSE_TIMEOUT):
            await self.closed.wait()


@asynccontextmanager
async def running_session(registry: ToolRegistry, **dispatcher_kwargs: Any):
    """Run a dispatcher for the duration of the block; closes input on exit."""
    harness = SessionHarness(registry, **dispatcher_kwargs)
    async with anyio.create_task_group() as tg:
        tg.start_soon(harness.serve)
        yield harness
        await harness.close_input()
        await harness.wait_closed()
