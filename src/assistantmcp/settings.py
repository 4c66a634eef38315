from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ASSISTANT_HOST = "https://prod-1-data.ke.pinecone.io"

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


class AssistantSettings(BaseSettings):
    """Configuration for the Pinecone Assistant MCP server.

    Loaded once at startup and never mutated afterwards (the model is frozen).
    """

    pinecone_api_key: SecretStr
    pinecone_assistant_host: str = DEFAULT_ASSISTANT_HOST
    pinecone_assistant_name: Optional[str] = None  # fallback when a call omits assistant_name
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    request_timeout: float = Field(
        default=30.0, gt=0, validation_alias="ASSISTANT_MCP_REQUEST_TIMEOUT"
    )
    default_top_k: int = Field(default=15, gt=0, validation_alias="ASSISTANT_MCP_DEFAULT_TOP_K")
    max_top_k: int = Field(default=64, gt=0, validation_alias="ASSISTANT_MCP_MAX_TOP_K")
    max_concurrent_calls: int = Field(
        default=8, gt=0, validation_alias="ASSISTANT_MCP_MAX_CONCURRENT_CALLS"
    )
    max_frame_bytes: int = Field(
        default=4 * 1024 * 1024, gt=0, validation_alias="ASSISTANT_MCP_MAX_FRAME_BYTES"
    )
    audit_log_dir: Optional[str] = Field(default=None, validation_alias="ASSISTANT_MCP_AUDIT_DIR")

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
            return _LEVEL_ALIASES.get(value, value)
        return value

    @field_validator("pinecone_assistant_host")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"Assistant host must be an http(s) URL, got '{value}'")
        return value

    @model_validator(mode="after")
    def _check_top_k_bounds(self) -> "AssistantSettings":
        if self.default_top_k > self.max_top_k:
            raise ValueError(
                f"default_top_k ({self.default_top_k}) exceeds max_top_k ({self.max_top_k})"
            )
        return self
