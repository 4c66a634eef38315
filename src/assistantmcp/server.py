import asyncio
import signal
from typing import Any, Optional

from mcp import types

from src.assistantmcp.dispatcher import RequestDispatcher
from src.assistantmcp.framing import MessageFramer, stdio_framer
from src.assistantmcp.pinecone_client import PineconeAssistantClient
from src.assistantmcp.settings import AssistantSettings
from src.assistantmcp.tools import TOOL_ASSISTANT_CONTEXT, ToolRegistry, build_tool_registry
from src.assistantmcp.utils.audit import AuditLogger
from src.utils.logger import configure_logging, get_logger

SERVER_NAME = "pinecone-assistant"
SERVER_VERSION = "0.1.0"

INSTRUCTIONS = (
    "This server connects to an existing Pinecone Assistant, "
    "a RAG system for retrieving relevant document snippets. "
    f"Use the {TOOL_ASSISTANT_CONTEXT} tool to access contextual information from its knowledge base"
)


class AssistantMCP:
    """Owns process lifecycle: configuration, upstream client, session and shutdown."""

    def __init__(self, **settings: Any):
        self.settings = AssistantSettings(**settings)
        configure_logging(level=self.settings.log_level)
        self.logger = get_logger("AssistantMCP")
        self.dispatcher: Optional[RequestDispatcher] = None
        self.audit_logger: Optional[AuditLogger] = None
        if self.settings.audit_log_dir:
            self.audit_logger = AuditLogger(log_dir=self.settings.audit_log_dir)

    def create_client(self) -> PineconeAssistantClient:
        self.logger.info(
            f"Creating Pinecone Assistant client [Host: {self.settings.pinecone_assistant_host}]"
        )
        return PineconeAssistantClient(
            api_key=self.settings.pinecone_api_key.get_secret_value(),
            base_url=self.settings.pinecone_assistant_host,
            timeout=self.settings.request_timeout,
        )

    def create_dispatcher(self, registry: ToolRegistry, framer: MessageFramer) -> RequestDispatcher:
        return RequestDispatcher(
            registry=registry,
            framer=framer,
            server_info=types.Implementation(name=SERVER_NAME, version=SERVER_VERSION),
            instructions=INSTRUCTIONS,
            max_concurrent_calls=self.settings.max_concurrent_calls,
            audit_logger=self.audit_logger,
        )

    async def run(self, framer: Optional[MessageFramer] = None) -> None:
        """Serve one MCP session (stdio unless a framer is given) until it closes."""
        self.logger.info("🚀 Starting Pinecone Assistant MCP server")
        owns_framer = framer is None
        if owns_framer:
            framer = stdio_framer(max_frame_bytes=self.settings.max_frame_bytes)

        loop = asyncio.get_running_loop()
        installed: list[int] = []

        def _signal_handler(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            self.logger.info(f"🛑 Received {sig_name}, initiating graceful shutdown...")
            if self.dispatcher:
                self.dispatcher.request_shutdown()

        try:
            async with self.create_client() as client:
                registry = build_tool_registry(client, self.settings)
                self.dispatcher = self.create_dispatcher(registry, framer)

                for sig in (signal.SIGTERM, signal.SIGINT):
                    try:
                        loop.add_signal_handler(sig, _signal_handler, sig)
                        installed.append(sig)
                    except (NotImplementedError, RuntimeError):
                        # Not available off the main thread or on Windows
                        pass

                self.logger.info(f"Server initialized with {len(registry)} tool(s), ready for requests")
                await self.dispatcher.serve()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            if owns_framer:
                await framer.aclose()
            if self.audit_logger:
                self.audit_logger.close()
            self.logger.info("✅ Graceful shutdown complete")
