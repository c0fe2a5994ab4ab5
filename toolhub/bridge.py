"""
Bridge between tool servers and LangChain.

Converts tools discovered on connected servers into LangChain tools, so
they can be handed to any LangChain agent instead of (or alongside) the
XML tool protocol used by AgentSession.

Usage:
    from toolhub.bridge import mcp_to_langchain_tool, langchain_tools

    # Single tool
    lc_tool = mcp_to_langchain_tool(manager, "calculator", "calculate")

    # All tools from all connected servers
    tools = langchain_tools(manager)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from toolhub.errors import ToolHubError
from toolhub.manager import ToolServerManager

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


def mcp_to_langchain_tool(
    manager: ToolServerManager,
    server_name: str,
    tool_name: str,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies to a tool server.

    The returned tool, when invoked by an agent, calls the tool through
    the manager and returns the result as text. Failures come back as
    text too, so the agent can see them.

    Args:
        manager: The ToolServerManager supervising the server
        server_name: Which server the tool lives on
        tool_name: The tool name (as discovered on the server)
        description_override: Optional override for the tool description
    """
    tools = manager.list_tools(server_name)
    tool_schema = next((t for t in tools if t.get("name") == tool_name), None) or {}

    description = (
        description_override
        or tool_schema.get("description")
        or f"MCP tool: {server_name}/{tool_name}"
    )

    async def _call_mcp(**kwargs: Any) -> str:
        try:
            result = await manager.call_tool(server_name, tool_name, kwargs)
        except ToolHubError as e:
            return f"Error calling {server_name}/{tool_name}: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, indent=2)

    return StructuredTool.from_function(
        coroutine=_call_mcp,
        name=tool_id(server_name, tool_name),
        description=description,
        args_schema=tool_schema.get("inputSchema") or _EMPTY_SCHEMA,
    )


def langchain_tools(manager: ToolServerManager) -> list[StructuredTool]:
    """Wrap every tool of every connected server."""
    return [
        mcp_to_langchain_tool(manager, server_name, tool["name"])
        for server_name, tool in manager.get_all_tools_and_resources().tools
    ]


def tool_id(server_name: str, tool_name: str) -> str:
    """Name a wrapped tool; server and tool share one id when they match."""
    return tool_name if server_name == tool_name else f"{server_name}__{tool_name}"
