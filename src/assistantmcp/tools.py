from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Optional

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.assistantmcp.errors import ArgumentValidationError, UnknownToolError
from src.assistantmcp.pinecone_client import PineconeAssistantClient
from src.assistantmcp.settings import AssistantSettings
from src.utils.logger import get_logger

TOOL_ASSISTANT_CONTEXT = "assistant_context"

PARAM_ASSISTANT_NAME = "assistant_name"
PARAM_QUERY = "query"
PARAM_TOP_K = "top_k"

ToolHandler = Callable[[dict[str, Any]], Awaitable[list[types.TextContent]]]


@dataclass(frozen=True)
class ToolDefinition:
    descriptor: types.Tool
    handler: ToolHandler


class ToolRegistry:
    """Static name -> tool mapping, fixed before the dispatcher starts serving.

    Read-only after construction, so concurrent lookups need no locking.
    """

    def __init__(self, definitions: Iterable[ToolDefinition]):
        tools: dict[str, ToolDefinition] = {}
        for definition in definitions:
            name = definition.descriptor.name
            if name in tools:
                raise ValueError(f"Duplicate tool name '{name}'")
            tools[name] = definition
        self._tools = MappingProxyType(tools)

    def list(self) -> list[types.Tool]:
        return [definition.descriptor for definition in self._tools.values()]

    def get(self, name: str) -> ToolHandler:
        definition = self._tools.get(name)
        if definition is None:
            raise UnknownToolError(name)
        return definition.handler

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class AssistantContextArgs(BaseModel):
    """Arguments accepted by the assistant_context tool."""

    query: str = Field(min_length=1)
    top_k: Optional[int] = Field(default=None, gt=0)
    assistant_name: Optional[str] = Field(default=None, min_length=1)

    # JSON types must match the schema exactly: no "3" or true for top_k
    model_config = ConfigDict(strict=True)


class AssistantContextTool:
    """Retrieves ranked context snippets from a Pinecone Assistant."""

    def __init__(self, client: PineconeAssistantClient, settings: AssistantSettings):
        self.client = client
        self.settings = settings
        self.logger = get_logger("AssistantContextTool")

    @property
    def descriptor(self) -> types.Tool:
        properties: dict[str, Any] = {
            PARAM_ASSISTANT_NAME: {
                "type": "string",
                "description": "Name of an existing Pinecone assistant",
            },
            PARAM_QUERY: {
                "type": "string",
                "description": "The query to retrieve context for.",
            },
            PARAM_TOP_K: {
                "type": "integer",
                "minimum": 1,
                "maximum": self.settings.max_top_k,
                "description": (
                    "The number of context snippets to retrieve. "
                    f"Defaults to {self.settings.default_top_k}."
                ),
            },
        }
        required = [PARAM_QUERY]
        if self.settings.pinecone_assistant_name is None:
            required.insert(0, PARAM_ASSISTANT_NAME)
        else:
            properties[PARAM_ASSISTANT_NAME]["description"] += (
                f". Defaults to '{self.settings.pinecone_assistant_name}'."
            )

        return types.Tool(
            name=TOOL_ASSISTANT_CONTEXT,
            description=(
                "Retrieves relevant document snippets from your Pinecone Assistant knowledge base. "
                "Returns an array of text snippets from the most relevant documents. "
                f"You can use the '{PARAM_TOP_K}' parameter to control result count "
                f"(default: {self.settings.default_top_k}). "
                "Recommended top_k: a few (5-8) for simple/narrow queries, "
                "10-20 for complex/broad topics."
            ),
            inputSchema={
                "type": "object",
                "properties": properties,
                "required": required,
            },
        )

    def parse_arguments(self, arguments: dict[str, Any]) -> tuple[str, str, int]:
        """Validate raw arguments into (assistant_name, query, top_k)."""
        try:
            args = AssistantContextArgs.model_validate(arguments)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ArgumentValidationError(f"Invalid parameters: {problems}") from e

        top_k = args.top_k if args.top_k is not None else self.settings.default_top_k
        if top_k > self.settings.max_top_k:
            raise ArgumentValidationError(
                f"Invalid parameters: {PARAM_TOP_K} must be at most {self.settings.max_top_k}"
            )

        assistant_name = args.assistant_name or self.settings.pinecone_assistant_name
        if not assistant_name:
            raise ArgumentValidationError(
                f"Invalid parameters: {PARAM_ASSISTANT_NAME} must be a string"
            )
        return assistant_name, args.query, top_k

    async def __call__(self, arguments: dict[str, Any]) -> list[types.TextContent]:
        assistant_name, query, top_k = self.parse_arguments(arguments)
        self.logger.info(
            f"Making request to Pinecone API for assistant: {assistant_name} with top_k: {top_k}"
        )
        response = await self.client.retrieve(assistant_name, query, top_k)
        self.logger.info(f"✅ Received {len(response.snippets)} snippet(s) from Pinecone API")

        # Upstream order is relevance order; only trim, never re-rank
        return [
            types.TextContent(type="text", text=snippet.to_text())
            for snippet in response.snippets[:top_k]
        ]


def build_tool_registry(
    client: PineconeAssistantClient, settings: AssistantSettings
) -> ToolRegistry:
    tool = AssistantContextTool(client, settings)
    return ToolRegistry([ToolDefinition(descriptor=tool.descriptor, handler=tool)])
