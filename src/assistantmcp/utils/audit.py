"""
Audit logging for assistant_context tool calls.

Each call becomes one JSONL line with timestamp, sanitized arguments,
outcome and duration. Lines are written through a dedicated loguru sink
with rotation support.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from pathlib import Path
from datetime import datetime, timezone
import json
import re

from loguru import logger

_SENSITIVE_KEYS = re.compile(
    r"(api[_-]?key|token|password|passwd|secret|credential|auth|bearer)",
    re.IGNORECASE,
)
_REDACTED = "***REDACTED***"


@dataclass(frozen=True)
class AuditConfig:
    """Where audit lines go and how the file sink rotates."""

    log_dir: str = "./logs"
    rotation: str = "10 MB"
    retention: str = "30 days"
    compression: str = "gz"


def _sanitize_arguments(args):
    """Recursively redact sensitive values from arguments dict."""
    if args is None:
        return None
    if not isinstance(args, dict):
        return args
    sanitized = {}
    for key, value in args.items():
        if _SENSITIVE_KEYS.search(key):
            sanitized[key] = _REDACTED
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_arguments(value)
        else:
            sanitized[key] = value
    return sanitized


class AuditLogger:
    """
    Audit logger for tool invocations.

    Writes to <log_dir>/audit.jsonl with automatic rotation.
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        config: Optional[AuditConfig] = None,
    ):
        """
        Args:
            log_dir: Directory for audit logs (default: ./logs)
            config: AuditConfig instance (overrides log_dir)
        """
        if config is None:
            config = AuditConfig(log_dir=log_dir) if log_dir else AuditConfig()
        self.config = config

        self.log_path = Path(self.config.log_dir)
        self.log_path.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_path / "audit.jsonl"

        self._sink_id = logger.add(
            str(self.log_file),
            format="{message}",  # Raw JSON, no formatting
            rotation=self.config.rotation,
            retention=self.config.retention,
            compression=self.config.compression,
            serialize=False,
            enqueue=True,
            filter=lambda record: record["extra"].get("audit") is True,
        )

    def log_tool_call(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        result_count: int,
        duration_ms: float,
    ) -> None:
        """Log a successful tool invocation."""
        self._write_entry(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": "tool_call",
                "tool_name": tool_name,
                "arguments": _sanitize_arguments(arguments),
                "status": "success",
                "result_count": result_count,
                "duration_ms": round(duration_ms, 2),
            }
        )

    def log_tool_failure(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        error: Exception,
        duration_ms: float,
    ) -> None:
        """Log a failed tool invocation; the error class name is the error kind."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "tool_call",
            "tool_name": tool_name,
            "arguments": _sanitize_arguments(arguments),
            "status": "error",
            "error_kind": type(error).__name__,
            "error": str(error),
            "duration_ms": round(duration_ms, 2),
        }
        status = getattr(error, "status", None)
        if status is not None:
            entry["http_status"] = status
        self._write_entry(entry)

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        json_line = json.dumps(entry, separators=(",", ":"), default=str)
        logger.bind(audit=True).info(json_line)

    def flush(self) -> None:
        """Block until queued entries have been written (sink uses enqueue=True)."""
        logger.complete()

    def close(self) -> None:
        """Remove the audit log sink from loguru."""
        logger.remove(self._sink_id)
