"""
toolhub — tool servers and tool orchestration for a coding agent.

Architecture:
    ┌──────────────┐    stream    ┌────────────────┐   ToolUse   ┌───────────────────┐
    │  Chat model  │ ───────────► │ MessageParser  │ ──────────► │  ToolDispatcher   │
    └──────────────┘              └────────────────┘             └─────────┬─────────┘
                                                           local tools ◄───┤
                                                                           ▼
    ┌──────────────┐    stdio     ┌────────────────┐             ┌───────────────────┐
    │  Tool Server │ ◄──────────► │ StdioTransport │ ◄────────── │ ToolServerManager │
    │ (subprocess) │  JSON lines  └────────────────┘             └───────────────────┘
    └──────────────┘

Each tool server is a standalone process that communicates via
stdin/stdout, one JSON message per line. The ToolServerManager launches
the servers, discovers their tools, resources and resource templates,
and routes calls to them. AgentSession drives a chat model and runs the
tools it asks for, one per turn.
"""

from toolhub.config import ConfigStore, ToolServerConfig
from toolhub.errors import ToolHubError
from toolhub.manager import ServerEvent, ServerStatus, ToolServerManager
from toolhub.parser import MessageParser, TextBlock, ToolUse, parse_assistant_message
from toolhub.server import StdioToolServer, ToolHandler
from toolhub.transport import StdioTransport


# Agent and bridge import langchain_core; tool servers load without it
def __getattr__(name):
    if name in ("AgentSession", "AssistantTurn"):
        from toolhub import agent
        return getattr(agent, name)
    if name in ("mcp_to_langchain_tool", "langchain_tools"):
        from toolhub import bridge
        return getattr(bridge, name)
    raise AttributeError(f"module 'toolhub' has no attribute {name!r}")


__all__ = [
    "AgentSession",
    "AssistantTurn",
    "ConfigStore",
    "MessageParser",
    "ServerEvent",
    "ServerStatus",
    "StdioToolServer",
    "StdioTransport",
    "TextBlock",
    "ToolHandler",
    "ToolHubError",
    "ToolServerConfig",
    "ToolServerManager",
    "ToolUse",
    "langchain_tools",
    "mcp_to_langchain_tool",
    "parse_assistant_message",
]
