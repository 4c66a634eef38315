import asyncio
import argparse
import sys
from pydantic import ValidationError
from src.assistantmcp.server import AssistantMCP
from src.assistantmcp.settings import AssistantSettings
from src.assistantmcp.cli import cmd_tools
from src.utils.logger import configure_logging, get_logger


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Pinecone Assistant MCP server")
    sub = parser.add_subparsers(dest="command")

    # start
    start = sub.add_parser("start", help="Serve MCP over stdin/stdout (default)")
    start.add_argument("--assistant-host", type=str, default=None)
    start.add_argument("--assistant-name", type=str, default=None)
    start.add_argument("--request-timeout", type=float, default=None)
    start.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None
    )

    # tools
    sub.add_parser("tools", help="Print the registered tool descriptors as JSON")

    argv = list(sys.argv[1:] if argv is None else argv)
    # "start" is the default subcommand
    if not argv or argv[0] not in ("start", "tools", "-h", "--help"):
        argv = ["start", *argv]
    return parser.parse_args(argv)


def _overrides(args) -> dict:
    """CLI flags that were given; anything else comes from the environment."""
    mapping = {
        "pinecone_assistant_host": getattr(args, "assistant_host", None),
        "pinecone_assistant_name": getattr(args, "assistant_name", None),
        "request_timeout": getattr(args, "request_timeout", None),
        "log_level": getattr(args, "log_level", None),
    }
    return {k: v for k, v in mapping.items() if v is not None}


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        if args.command == "tools":
            print(asyncio.run(cmd_tools(AssistantSettings())))
            return 0
        server = AssistantMCP(**_overrides(args))
    except ValidationError as e:
        configure_logging()
        logger = get_logger("main")
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"])
            if err["type"] == "missing" and field == "pinecone_api_key":
                logger.error("❌ Missing environment variable: PINECONE_API_KEY")
            else:
                logger.error(f"❌ Invalid configuration for {field}: {err['msg']}")
        return 1

    asyncio.run(server.run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
