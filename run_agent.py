"""
Run Agent — end-to-end: tool servers → agent session → live model.

This is the script that closes the loop. It:
1. Loads tool server configs from the MCP settings file
2. Starts every enabled server as a stdio subprocess
3. Discovers their tools, resources and resource templates
4. Runs an agent session on a task, executing one tool per turn
5. Stops the servers

Usage:
    # Start the configured servers and show what they offer
    python run_agent.py --list

    # Work on a task
    python run_agent.py --task "Add a README to this project"

    # Use a specific model and settings file
    python run_agent.py --config config/mcp-settings.json --model anthropic:claude-sonnet-4-5 --task "..."
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from toolhub.config import ConfigStore, default_config_path
from toolhub.errors import ConfigError
from toolhub.manager import ServerStatus, ToolServerManager

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic:claude-sonnet-4-5"


class ConsoleObserver:
    """Prints the session as it streams."""

    def text(self, content: str, partial: bool) -> None:
        if not partial:
            print(content, end="\n\n")

    def tool_use(self, block) -> None:
        print(f"── {block.name} {dict(block.params)}")

    def tool_result(self, block, result) -> None:
        marker = "✗" if result.is_error else "✓"
        print(f"{marker} {result.content[:2000]}", end="\n\n")

    def turn_completed(self, turn) -> None:
        pass


def print_servers(manager: ToolServerManager) -> None:
    servers = manager.get_all_servers()
    if not servers:
        print("No MCP servers configured.")
        return

    for name, info in servers.items():
        print(f"\n  [{name}] {info.status.value}")
        if info.error:
            print(f"    error: {info.error}")
        if info.status != ServerStatus.CONNECTED:
            continue
        for tool in info.tools:
            print(f"    tool      {tool.get('name'):<28} {tool.get('description', '')}")
        for resource in info.resources:
            print(f"    resource  {resource.get('uri')}")
        for template in info.resource_templates:
            print(f"    template  {template.get('uriTemplate')}")
    print()


async def run(args: argparse.Namespace) -> int:
    try:
        configs = ConfigStore(args.config).load()
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    manager = ToolServerManager()
    try:
        print(f"Starting {len(configs)} MCP server(s)...")
        await manager.start_all(configs)

        if args.list:
            print_servers(manager)
            return 0

        if not os.environ.get("ANTHROPIC_API_KEY") and args.model.startswith("anthropic:"):
            print("\n⚠  ANTHROPIC_API_KEY not set. Cannot invoke agent.")
            print("   Set it in .env or export it, then re-run.")
            return 1

        from langchain.chat_models import init_chat_model

        from toolhub.agent import AgentSession

        session = AgentSession(
            model=init_chat_model(args.model),
            manager=manager,
            working_directory=args.cwd,
            observer=ConsoleObserver(),
        )

        print(f"\nInvoking agent with task: {args.task}\n")
        print("=" * 60)
        try:
            turns = await session.run(args.task, max_turns=args.max_turns)
        except Exception as e:
            print(f"Agent invocation failed: {e}")
            return 1
        print("=" * 60)
        print(f"Finished after {len(turns)} turn(s).")
        return 0
    finally:
        await manager.stop_all()
        print("\nMCP servers stopped.")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run a coding agent with live MCP tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_agent.py --list
  python run_agent.py --task "Summarize the TODOs in this repository"
  python run_agent.py --task "Fix the failing test" --model openai:gpt-4o --max-turns 10
        """,
    )
    parser.add_argument("--config", "-c", type=str, default=str(default_config_path()), help="MCP settings file")
    parser.add_argument("--list", action="store_true", help="Start servers, list their capabilities and exit")
    parser.add_argument("--task", type=str, help="Task description for the agent")
    parser.add_argument("--model", "-m", type=str, default=DEFAULT_MODEL, help="Model as provider:name")
    parser.add_argument("--max-turns", type=int, default=20, help="Maximum model turns")
    parser.add_argument("--cwd", type=str, default=os.getcwd(), help="Working directory for local tools")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.list and not args.task:
        parser.error("--task is required (or use --list)")

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
