from __future__ import annotations
import json

from src.assistantmcp.pinecone_client import PineconeAssistantClient
from src.assistantmcp.settings import AssistantSettings
from src.assistantmcp.tools import build_tool_registry


async def cmd_tools(settings: AssistantSettings) -> str:
    """Render the registered tool descriptors as JSON. Makes no network calls."""
    async with PineconeAssistantClient(
        api_key=settings.pinecone_api_key.get_secret_value(),
        base_url=settings.pinecone_assistant_host,
        timeout=settings.request_timeout,
    ) as client:
        registry = build_tool_registry(client, settings)
        tools = [
            tool.model_dump(by_alias=True, mode="json", exclude_none=True)
            for tool in registry.list()
        ]
    return json.dumps({"tools": tools}, indent=2)
