"""
Async client for the Pinecone Assistant context-retrieval endpoint.

Every failure is mapped onto the UpstreamError hierarchy. The client never
retries; one call is one HTTP attempt, bounded by a single timeout.
"""

import json
from types import TracebackType
from typing import Any, Optional
from urllib.parse import quote

import anyio
import httpx
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    ValidatorFunctionWrapHandler,
    model_validator,
)

from src.assistantmcp.errors import (
    AuthError,
    NotFoundError,
    ProtocolMismatchError,
    RateLimitedError,
    TransportError,
    UpstreamError,
    UpstreamUnavailableError,
)
from src.utils.logger import get_logger

PINECONE_API_VERSION = "2025-04"
_MAX_ERROR_BODY_CHARS = 500


class ContextSnippet(BaseModel):
    """One retrieved snippet.

    The upstream object is kept verbatim so it can be handed to the client
    with its original keys (`text` stays `text`).
    """

    content: str = Field(validation_alias=AliasChoices("content", "text"))
    score: Optional[float] = None
    reference: Optional[Any] = None

    model_config = ConfigDict(extra="allow")

    _raw: dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode="wrap")
    @classmethod
    def _keep_raw(cls, data: Any, handler: ValidatorFunctionWrapHandler):
        snippet = handler(data)
        if isinstance(data, dict):
            snippet._raw = data
        return snippet

    def to_text(self) -> str:
        """Compact JSON of the snippet as received."""
        raw = self._raw or self.model_dump(exclude_none=True)
        return json.dumps(raw, separators=(",", ":"), ensure_ascii=False)


class ContextResponse(BaseModel):
    """Relevance-ordered snippets as returned upstream (never re-ranked)."""

    snippets: list[ContextSnippet] = Field(validation_alias=AliasChoices("snippets", "matches"))
    usage: Optional[dict[str, Any]] = None


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return max(0.0, float(retry_after))
    except ValueError:
        return None


class PineconeAssistantClient:
    """Issues context requests against a Pinecone Assistant host."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Api-Key": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": PINECONE_API_VERSION,
        }
        if http_client is None:
            self._client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True
        else:
            self._client = http_client
            self._owns_client = False
        self.logger = get_logger("PineconeClient")

    async def __aenter__(self) -> "PineconeAssistantClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def context_url(self, assistant_name: str) -> str:
        return f"{self.base_url}/assistant/chat/{quote(assistant_name, safe='')}/context"

    async def retrieve(self, assistant_name: str, query: str, top_k: int) -> ContextResponse:
        """Fetch up to top_k context snippets for query from the named assistant."""
        url = self.context_url(assistant_name)
        body = {"query": query, "top_k": top_k}

        self.logger.debug(f"POST {url} (top_k={top_k})")
        try:
            with anyio.fail_after(self.timeout):
                response = await self._client.post(url, json=body, headers=self._headers)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(
                f"Request to Pinecone timed out after {self.timeout:g}s"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Request to Pinecone failed: {e!r}") from e

        if not response.is_success:
            raise self._map_status(response, assistant_name)

        try:
            return ContextResponse.model_validate(response.json())
        except ValueError as e:
            # json.JSONDecodeError and pydantic ValidationError are both ValueErrors
            detail = e.errors()[0]["msg"] if isinstance(e, ValidationError) else str(e)
            raise ProtocolMismatchError(
                f"Unexpected response from Pinecone Assistant: {detail}",
                status=response.status_code,
            ) from e

    def _map_status(self, response: httpx.Response, assistant_name: str) -> UpstreamError:
        status = response.status_code
        text = response.text[:_MAX_ERROR_BODY_CHARS]

        if status in (401, 403):
            return AuthError(
                f"Authentication with Pinecone failed (HTTP {status}): "
                f"check PINECONE_API_KEY. {text}".rstrip(),
                status=status,
            )
        if status == 404:
            return NotFoundError(
                f'Assistant "{assistant_name}" not found at {self.base_url}',
                status=status,
            )
        if status == 429:
            retry_after = _parse_retry_after(response)
            hint = f", retry after {retry_after:g}s" if retry_after is not None else ""
            return RateLimitedError(
                f"Pinecone rate limit exceeded (HTTP 429{hint})",
                status=status,
                retry_after=retry_after,
            )
        if status >= 500:
            return UpstreamUnavailableError(
                f"Pinecone Assistant unavailable (HTTP {status}): {text}".rstrip(": "),
                status=status,
            )
        return UpstreamError(f"API error: {status} - {text}", status=status)
