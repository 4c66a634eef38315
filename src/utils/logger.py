import sys
from typing import Literal
from loguru import logger

# Global namespace for all loggers
BASE_LOGGER_NAMESPACE = "assistant_mcp"

# Initialization guard to prevent duplicate configuration
_configured = False


def get_logger(name: str) -> "logger":
    """
    Returns a loguru logger bound with the given module name.

    Example: get_logger("Dispatcher") → logger with module="assistant_mcp.Dispatcher"

    Note: loguru uses a single global logger; binding adds contextual
    information without creating separate logger instances.
    """
    return logger.bind(module=f"{BASE_LOGGER_NAMESPACE}.{name}")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """
    Configures loguru globally for the entire app.

    Should be called once (e.g., in AssistantMCP.__init__).
    Subsequent calls are no-ops to prevent duplicate handlers.

    Everything goes to stderr: stdout carries protocol frames only.

    Args:
        level: Logging level as a string.
    """
    global _configured
    if _configured:
        return

    # Remove default loguru handler
    logger.remove()

    colorize = sys.stderr.isatty()

    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{extra[module]}</cyan> | {message}",
        level=level,
        colorize=colorize,
        filter=lambda record: "module" in record["extra"] and not record["extra"].get("audit"),
    )

    # Fallback handler for loggers without module binding
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | {message}",
        level=level,
        colorize=colorize,
        filter=lambda record: "module" not in record["extra"] and not record["extra"].get("audit"),
    )

    _configured = True
