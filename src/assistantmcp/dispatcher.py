"""
JSON-RPC request dispatcher for a single MCP session.

One reader loop decodes frames in arrival order. Cheap methods are answered
inline; tools/call runs as its own task so a slow upstream request never
stalls the reader. All outbound frames pass through one queue drained by a
single writer task.
"""

import enum
import math
import time
from typing import Any, Awaitable, Callable, Optional

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectSendStream, MemoryObjectReceiveStream
from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.assistantmcp.errors import (
    DecodeError,
    InvalidParamsError,
    ProtocolError,
    ProtocolStateError,
    RequestId,
    ToolError,
    UnknownMethodError,
)
from src.assistantmcp.framing import END_OF_STREAM, MessageFramer, OutboundMessage
from src.assistantmcp.tools import ToolRegistry
from src.assistantmcp.utils.audit import AuditLogger
from src.utils.logger import get_logger

SUPPORTED_PROTOCOL_VERSIONS = tuple(
    dict.fromkeys(("2024-11-05", "2025-03-26", "2025-06-18", types.LATEST_PROTOCOL_VERSION))
)
LATEST_PROTOCOL_VERSION = types.LATEST_PROTOCOL_VERSION

METHOD_INITIALIZE = "initialize"
METHOD_SHUTDOWN = "shutdown"

RequestHandler = Callable[[types.JSONRPCRequest], Awaitable[BaseModel]]


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class InitializeParams(BaseModel):
    """initialize params; clientInfo is optional for lenient clients."""

    protocolVersion: str
    capabilities: dict[str, Any] = Field(default_factory=dict)
    clientInfo: Optional[types.Implementation] = None

    model_config = ConfigDict(extra="allow")


def _params_error(method: str, error: ValidationError) -> InvalidParamsError:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first["loc"]) or "params"
    return InvalidParamsError(f"Invalid params for {method}: {location}: {first['msg']}")


class RequestDispatcher:
    """Routes decoded messages to method handlers and correlates responses by id."""

    def __init__(
        self,
        registry: ToolRegistry,
        framer: MessageFramer,
        server_info: types.Implementation,
        instructions: Optional[str] = None,
        max_concurrent_calls: int = 8,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.registry = registry
        self.framer = framer
        self.server_info = server_info
        self.instructions = instructions
        self.audit_logger = audit_logger
        self.logger = get_logger("Dispatcher")
        self.state = SessionState.UNINITIALIZED
        self.protocol_version: Optional[str] = None

        self._call_limiter = anyio.CapacityLimiter(max_concurrent_calls)
        self._in_flight: dict[RequestId, anyio.CancelScope] = {}
        self._outbox: Optional[MemoryObjectSendStream] = None
        self._handlers: Optional[TaskGroup] = None
        self._reader_scope: Optional[anyio.CancelScope] = None

        # Method name -> handler, resolved once
        self._request_handlers: dict[str, RequestHandler] = {
            METHOD_INITIALIZE: self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "resources/list": self._list_resources,
            "resources/read": self._read_resource,
            "prompts/list": self._list_prompts,
            "prompts/get": self._get_prompt,
            METHOD_SHUTDOWN: self._shutdown,
        }
        self._notification_handlers: dict[str, Callable[[types.JSONRPCNotification], None]] = {
            "notifications/initialized": self._on_initialized,
            "notifications/cancelled": self._on_cancelled,
            METHOD_SHUTDOWN: self._on_shutdown_notification,
        }

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    async def serve(self) -> None:
        """Serve the session until end of input or a completed shutdown."""
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)
        self._outbox = send_stream
        try:
            async with anyio.create_task_group() as writer_group:
                writer_group.start_soon(self._write_loop, receive_stream, writer_group.cancel_scope)
                async with send_stream:
                    async with anyio.create_task_group() as handlers:
                        self._handlers = handlers
                        end_of_stream = False
                        with anyio.CancelScope() as reader_scope:
                            self._reader_scope = reader_scope
                            end_of_stream = await self._read_loop()
                        if end_of_stream and self.state is not SessionState.SHUTTING_DOWN:
                            if self._in_flight:
                                self.logger.info(
                                    f"Input closed; abandoning {len(self._in_flight)} in-flight call(s)"
                                )
                            handlers.cancel_scope.cancel()
                        self.state = SessionState.SHUTTING_DOWN
        finally:
            self.state = SessionState.CLOSED
            self._outbox = None
            self.logger.info("✅ Session closed")

    def request_shutdown(self) -> None:
        """Stop accepting requests; close once in-flight calls have finished."""
        if self.state in (SessionState.SHUTTING_DOWN, SessionState.CLOSED):
            return
        self.logger.info(f"🛑 Shutting down ({len(self._in_flight)} call(s) in flight)")
        self.state = SessionState.SHUTTING_DOWN
        self._stop_reader_if_drained()

    def _stop_reader_if_drained(self) -> None:
        if (
            self.state is SessionState.SHUTTING_DOWN
            and not self._in_flight
            and self._reader_scope is not None
        ):
            self._reader_scope.cancel()

    async def _read_loop(self) -> bool:
        """Consume frames until the input ends; returns True on end of stream."""
        while True:
            try:
                message = await self.framer.read_message()
            except DecodeError as e:
                await self._on_decode_error(e)
                continue

            if message is END_OF_STREAM:
                self.logger.info("Input stream closed")
                return True

            if isinstance(message, types.JSONRPCRequest):
                await self._on_request(message)
            elif isinstance(message, types.JSONRPCNotification):
                self._on_notification(message)
            else:
                # The server never issues requests, so nothing awaits a response
                self.logger.debug(f"Ignoring unsolicited response for id {message.id}")

    async def _write_loop(
        self, receive_stream: MemoryObjectReceiveStream, scope: anyio.CancelScope
    ) -> None:
        async with receive_stream:
            async for message in receive_stream:
                try:
                    await self.framer.write_message(message)
                except (OSError, anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
                    self.logger.warning(f"⚠️ Output stream closed, ending session: {e}")
                    self.state = SessionState.CLOSED
                    scope.cancel()
                    return

    async def _send(self, message: OutboundMessage) -> None:
        if self.state is SessionState.CLOSED or self._outbox is None:
            self.logger.debug("Session closed; dropping outbound message")
            return
        await self._outbox.send(message)

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------

    async def _on_decode_error(self, error: DecodeError) -> None:
        if error.request_id is None:
            self.logger.warning(f"⚠️ Dropping undecodable frame: {error}")
            return
        self.logger.warning(f"⚠️ Undecodable frame for id {error.request_id}: {error}")
        await self._send(self._error_response(error.request_id, error.to_error_data()))

    async def _on_request(self, request: types.JSONRPCRequest) -> None:
        if request.id in self._in_flight:
            self.logger.warning(f"⚠️ Dropping request reusing in-flight id {request.id}")
            return

        if request.method == "tools/call" and self._check_state(request) is None:
            self._spawn_tool_call(request)
            return

        response = await self._respond(request)
        await self._send(response)
        if request.method == METHOD_SHUTDOWN and isinstance(response, types.JSONRPCResponse):
            self.request_shutdown()

    def _on_notification(self, notification: types.JSONRPCNotification) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            self.logger.debug(f"Ignoring notification '{notification.method}'")
            return
        handler(notification)

    def _check_state(self, request: types.JSONRPCRequest) -> Optional[ProtocolStateError]:
        if self.state is SessionState.UNINITIALIZED and request.method != METHOD_INITIALIZE:
            return ProtocolStateError(
                f"Server not initialized: '{request.method}' requires a prior initialize"
            )
        if self.state is SessionState.READY and request.method == METHOD_INITIALIZE:
            return ProtocolStateError("Server already initialized")
        if self.state in (SessionState.SHUTTING_DOWN, SessionState.CLOSED):
            return ProtocolStateError("Server is shutting down")
        return None

    async def _respond(self, request: types.JSONRPCRequest) -> OutboundMessage:
        """Run the handler for request and wrap the outcome as a response frame."""
        try:
            state_error = self._check_state(request)
            if state_error is not None:
                raise state_error
            handler = self._request_handlers.get(request.method)
            if handler is None:
                raise UnknownMethodError(request.method)
            result = await handler(request)
        except ProtocolError as e:
            self.logger.warning(f"⚠️ {request.method} (id={request.id}) failed: {e}")
            return self._error_response(request.id, e.to_error_data())
        except Exception as e:
            self.logger.exception(f"❌ Unhandled error in {request.method} (id={request.id}): {e}")
            return self._error_response(
                request.id,
                types.ErrorData(code=types.INTERNAL_ERROR, message=f"Internal error: {e}"),
            )
        return types.JSONRPCResponse(
            jsonrpc="2.0",
            id=request.id,
            result=result.model_dump(by_alias=True, mode="json", exclude_none=True),
        )

    @staticmethod
    def _error_response(request_id: RequestId, error: types.ErrorData) -> types.JSONRPCError:
        return types.JSONRPCError(jsonrpc="2.0", id=request_id, error=error)

    # ------------------------------------------------------------------
    # tools/call tasks
    # ------------------------------------------------------------------

    def _spawn_tool_call(self, request: types.JSONRPCRequest) -> None:
        scope = anyio.CancelScope()
        self._in_flight[request.id] = scope
        self._handlers.start_soon(
            self._run_tool_call, request, scope, name=f"tools/call#{request.id}"
        )

    async def _run_tool_call(self, request: types.JSONRPCRequest, scope: anyio.CancelScope) -> None:
        try:
            with scope:
                async with self._call_limiter:
                    response = await self._respond(request)
                await self._send(response)
            if scope.cancelled_caught:
                self.logger.info(f"Tool call {request.id} cancelled; no response sent")
        finally:
            self._in_flight.pop(request.id, None)
            self._stop_reader_if_drained()

    # ------------------------------------------------------------------
    # Method handlers
    # ------------------------------------------------------------------

    async def _initialize(self, request: types.JSONRPCRequest) -> types.InitializeResult:
        try:
            params = InitializeParams.model_validate(request.params or {})
        except ValidationError as e:
            raise _params_error(request.method, e) from e

        if params.protocolVersion in SUPPORTED_PROTOCOL_VERSIONS:
            self.protocol_version = params.protocolVersion
        else:
            self.protocol_version = LATEST_PROTOCOL_VERSION
        client = params.clientInfo.name if params.clientInfo else "unknown client"
        self.logger.info(f"🤝 Initialized session with {client} (protocol {self.protocol_version})")
        self.state = SessionState.READY

        return types.InitializeResult(
            protocolVersion=self.protocol_version,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=self.server_info,
            instructions=self.instructions,
        )

    async def _ping(self, request: types.JSONRPCRequest) -> types.EmptyResult:
        return types.EmptyResult()

    async def _list_tools(self, request: types.JSONRPCRequest) -> types.ListToolsResult:
        self.logger.debug("Listing available tools")
        return types.ListToolsResult(tools=self.registry.list())

    async def _list_resources(self, request: types.JSONRPCRequest) -> types.ListResourcesResult:
        return types.ListResourcesResult(resources=[])

    async def _read_resource(self, request: types.JSONRPCRequest) -> types.ReadResourceResult:
        raise InvalidParamsError("No resources available")

    async def _list_prompts(self, request: types.JSONRPCRequest) -> types.ListPromptsResult:
        return types.ListPromptsResult(prompts=[])

    async def _get_prompt(self, request: types.JSONRPCRequest) -> types.GetPromptResult:
        name = (request.params or {}).get("name")
        raise InvalidParamsError(f"Prompt {name} not found")

    async def _shutdown(self, request: types.JSONRPCRequest) -> types.EmptyResult:
        return types.EmptyResult()

    async def _call_tool(self, request: types.JSONRPCRequest) -> types.CallToolResult:
        try:
            params = types.CallToolRequestParams.model_validate(request.params or {})
        except ValidationError as e:
            raise _params_error(request.method, e) from e

        handler = self.registry.get(params.name)
        arguments = params.arguments or {}
        self.logger.info(f"Calling tool: {params.name} (id={request.id})")

        started = time.perf_counter()
        try:
            content = await handler(arguments)
        except ToolError as e:
            self.logger.error(f"❌ Tool '{params.name}' failed: {e}")
            if self.audit_logger:
                self.audit_logger.log_tool_failure(
                    params.name, arguments, e, (time.perf_counter() - started) * 1000
                )
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=str(e))],
                isError=True,
            )

        if self.audit_logger:
            self.audit_logger.log_tool_call(
                params.name, arguments, len(content), (time.perf_counter() - started) * 1000
            )
        return types.CallToolResult(content=content, isError=False)

    # ------------------------------------------------------------------
    # Notification handlers
    # ------------------------------------------------------------------

    def _on_initialized(self, notification: types.JSONRPCNotification) -> None:
        self.logger.debug("Client confirmed initialization")

    def _on_cancelled(self, notification: types.JSONRPCNotification) -> None:
        params = notification.params or {}
        request_id = params.get("requestId")
        scope = self._in_flight.get(request_id) if isinstance(request_id, (str, int)) else None
        if scope is None:
            self.logger.debug(f"Cancellation for unknown or finished request {request_id!r}")
            return
        self.logger.info(f"Cancelling request {request_id}: {params.get('reason', 'no reason given')}")
        scope.cancel()

    def _on_shutdown_notification(self, notification: types.JSONRPCNotification) -> None:
        self.request_shutdown()
