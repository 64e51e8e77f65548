"""
Tooltrellis CLI entry point.

Provides command-line access to the orchestration core: show the effective
configuration, list the tools discovered on the configured MCP servers, and
ask a single question end to end.
"""

import argparse
import asyncio
import json
import shlex
import sys
from pathlib import Path

from tooltrellis import __version__
from tooltrellis.components import OrchestrationComponents
from tooltrellis.config.logging import get_logger, setup_logging
from tooltrellis.config.settings import MCPServerSettings, Settings, load_settings
from tooltrellis.errors import ToolConnectionError


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="tooltrellis",
        description="Tool-calling orchestration core for conversational agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Tooltrellis {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Config command
    subparsers.add_parser(
        "config",
        help="Show current configuration",
    )

    # Tools command
    tools_parser = subparsers.add_parser(
        "tools",
        help="List the tools discovered on the configured MCP servers",
    )
    _add_server_options(tools_parser)

    # Ask command
    ask_parser = subparsers.add_parser(
        "ask",
        help="Ask one question, letting the model call the configured tools",
    )
    ask_parser.add_argument(
        "question",
        help='Question to ask, e.g. "Roll 2d6 and tell me the total"',
    )
    _add_server_options(ask_parser)
    ask_parser.add_argument(
        "--model",
        default=None,
        help="Override the LiteLLM model string from config",
    )
    ask_parser.add_argument(
        "--system",
        default=None,
        help="System prompt for this question",
    )
    ask_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full canonical response as JSON",
    )

    return parser


def _add_server_options(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument(
        "--mcp-server",
        action="append",
        default=[],
        metavar="CMD",
        help='Extra stdio MCP server command, e.g. "npx -y @modelcontextprotocol/server-everything". '
             "May be given more than once.",
    )


def parse_server_commands(commands: list[str]) -> list[MCPServerSettings]:
    """
    Turn --mcp-server command strings into server settings.

    Raises:
        ValueError: A command string is empty
    """
    servers = []
    for index, command in enumerate(commands):
        parts = shlex.split(command)
        if not parts:
            raise ValueError("--mcp-server command cannot be empty")
        servers.append(
            MCPServerSettings(connection_id=f"cli-{index}", command=parts[0], args=parts[1:])
        )
    return servers


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("Current Configuration:")
    logger.info("\n=== Tooltrellis Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nLLM Model: {settings.llm.model}")
    logger.info(f"LLM API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    logger.info(f"LLM Temperature: {settings.llm.temperature} (synthesis {settings.llm.synthesis_temperature})")
    logger.info(f"LLM Transport Retries: {settings.llm.max_transport_retries}")
    logger.info(f"\nMax Tool Rounds: {settings.orchestrator.max_tool_rounds}")
    logger.info(f"Max Retry Attempts: {settings.orchestrator.max_retry_attempts}")
    logger.info(f"\nTool Schema TTL: {settings.tools.schema_ttl_seconds}s")
    logger.info(f"Tool Call Timeout: {settings.tools.call_timeout_seconds}s")
    logger.info(f"MCP Servers: {len(settings.tools.mcp_servers)}")
    for server in settings.tools.mcp_servers:
        logger.info(f"  {server.connection_id}: {server.command} {' '.join(server.args)}")

    return 0


async def cmd_tools(args, settings: Settings) -> int:
    """List discovered tools and their input contracts."""
    logger = get_logger(__name__)

    try:
        factory = OrchestrationComponents(settings)
        connections = factory.create_connections(parse_server_commands(args.mcp_server))
        if not connections:
            print("No MCP servers configured. Use --mcp-server or TOOLS__MCP_SERVERS.")
            return 0

        async with factory.create_schema_cache(connections) as cache:
            schemas = cache.schemas()
            print(f"\n=== Tools ({len(schemas)}) ===")
            for schema in sorted(schemas, key=lambda s: s.tool_name):
                print(f"\n{schema.tool_name}  [{schema.connection_id}]")
                if schema.description:
                    print(f"  {schema.description}")
                print(f"  fields: {', '.join(schema.known_fields) or '(none)'}")
                if schema.required_fields:
                    print(f"  required: {', '.join(schema.required_fields)}")
        return 0

    except (ToolConnectionError, ValueError) as e:
        logger.error(f"Tool discovery failed: {e}")
        return 1


async def cmd_ask(args, settings: Settings) -> int:
    """Run one orchestrated turn and print the answer."""
    logger = get_logger(__name__)

    if args.model:
        settings.llm = settings.llm.model_copy(update={"model": args.model})

    if not settings.llm.api_key:
        print("LLM API key not set. Add LLM__API_KEY=<your-key> to your .env file.", file=sys.stderr)
        return 1

    try:
        factory = OrchestrationComponents(settings)
        connections = factory.create_connections(parse_server_commands(args.mcp_server))

        async with factory.create_schema_cache(connections) as cache:
            logger.info(f"Sending to {settings.llm.model} with {len(cache.tool_names())} tools...")
            service = factory.create_chat_service(cache, system_prompt=args.system)
            response = await service.handle({"message": {"content": args.question}})

    except (ToolConnectionError, ValueError) as e:
        logger.error(f"Ask failed: {e}")
        return 1

    if args.json:
        print(json.dumps(response, indent=2))
        return 0 if "error" not in response else 1

    if "error" in response:
        print(f"\nError: {response['error']['message']}", file=sys.stderr)
        return 1

    print(f"\nQ: {args.question}\n")
    print(response["data"]["message"]["content"]["text"])

    metrics = response.get("metrics")
    if metrics:
        if metrics["tool_executions"]:
            print("\n--- Tool Calls ---")
            for execution in metrics["tool_executions"]:
                print(f"  {execution['tool_name']} → {execution['outcome']} ({execution['duration_ms']}ms)")
        print(f"\nTokens: {metrics['total_tokens']} "
              f"(prompt {metrics['prompt_tokens']} "
              f"+ completion {metrics['completion_tokens']}), "
              f"model calls: {metrics['model_calls']}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    # Setup logging
    setup_logging(settings)

    # Execute command
    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "tools":
        return asyncio.run(cmd_tools(args, settings))
    elif args.command == "ask":
        return asyncio.run(cmd_ask(args, settings))
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
