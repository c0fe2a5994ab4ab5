"""
Tool dispatcher — turns a finished ToolUse block into result text.

Two kinds of tools reach the dispatcher:

  - local tools (read_file, execute_command, ...) handled by LocalTools
  - use_mcp_tool / access_mcp_resource, routed through the
    ToolServerManager to a tool server process

Nothing raised while running a tool escapes dispatch(): every failure
becomes result text so the model can see it and react.

Only one tool runs per model turn. Call begin_turn() before each model
response; a second tool invocation in the same turn is not executed and
gets a diagnostic result instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from toolhub.local_tools import LocalTools
from toolhub.manager import ToolServerManager
from toolhub.parser import ToolUse

logger = logging.getLogger(__name__)

USE_MCP_TOOL = "use_mcp_tool"
ACCESS_MCP_RESOURCE = "access_mcp_resource"
ATTEMPT_COMPLETION = "attempt_completion"
ASK_FOLLOWUP_QUESTION = "ask_followup_question"

# tool name → (LocalTools method, required params, optional params)
LOCAL_TOOLS: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    "read_file": ("read_file", ("path",), ()),
    "write_to_file": ("write_to_file", ("path", "content"), ()),
    "replace_in_file": ("replace_in_file", ("path", "diff"), ()),
    "list_files": ("list_files", ("path",), ("recursive",)),
    "search_files": ("search_files", ("path", "regex"), ("file_pattern",)),
    "execute_command": ("execute_command", ("command",), ()),
    ASK_FOLLOWUP_QUESTION: ("ask_followup_question", ("question",), ("options",)),
    ATTEMPT_COMPLETION: ("attempt_completion", ("result",), ("command",)),
}

_BOOLEAN_PARAMS = {"recursive"}

Approver = Callable[[ToolUse], Awaitable[bool]]


@dataclass
class ToolResult:
    """Outcome of one dispatched tool invocation."""
    tool_name: str
    content: str
    executed: bool = True
    is_error: bool = False


class ToolDispatcher:
    """Routes tool invocations to local handlers or tool servers."""

    def __init__(
        self,
        manager: ToolServerManager,
        local_tools: LocalTools,
        approve: Approver | None = None,
    ):
        """
        Args:
            manager: Supervisor of the tool server connections.
            local_tools: Handlers for the built-in tools.
            approve: Asked before running a tool server call that is not
                     in that server's autoApprove list. None approves all.
        """
        self.manager = manager
        self.local_tools = local_tools
        self.approve = approve
        self._executed_this_turn: str | None = None

    def begin_turn(self) -> None:
        """Start a new model turn; the next tool invocation may run."""
        self._executed_this_turn = None

    async def dispatch(self, block: ToolUse) -> ToolResult:
        if block.partial:
            raise ValueError(f"Cannot dispatch partial tool block '{block.name}'")

        if self._executed_this_turn is not None:
            logger.warning(
                f"Rejected {block.name}: {self._executed_this_turn} already ran this turn"
            )
            return ToolResult(
                tool_name=block.name,
                content=(
                    f"Tool {block.name} was not executed: only one tool may be used "
                    f"per message, and {self._executed_this_turn} was already used. "
                    "Wait for its result before using another tool."
                ),
                executed=False,
                is_error=True,
            )

        self._executed_this_turn = block.name
        logger.info(f"Executing tool: {block.name}")

        if block.name == USE_MCP_TOOL:
            return await self._use_mcp_tool(block)
        if block.name == ACCESS_MCP_RESOURCE:
            return await self._access_mcp_resource(block)
        if block.name in LOCAL_TOOLS:
            return await self._run_local(block)

        return ToolResult(block.name, f"Tool {block.name} is not implemented yet.", is_error=True)

    async def _run_local(self, block: ToolUse) -> ToolResult:
        method_name, required, optional = LOCAL_TOOLS[block.name]
        missing = [p for p in required if p not in block.params]
        if missing:
            return ToolResult(
                block.name,
                f"Error executing {block.name}: missing required parameter(s): {', '.join(missing)}",
                is_error=True,
            )

        kwargs: dict[str, Any] = {}
        for name in (*required, *optional):
            if name in block.params:
                value = block.params[name]
                kwargs[name] = value.strip().lower() == "true" if name in _BOOLEAN_PARAMS else value

        try:
            content = await getattr(self.local_tools, method_name)(**kwargs)
        except Exception as e:
            logger.warning(f"{block.name} failed: {e}")
            return ToolResult(block.name, f"Error executing {block.name}: {e}", is_error=True)
        return ToolResult(block.name, content)

    async def _use_mcp_tool(self, block: ToolUse) -> ToolResult:
        server_name = block.params.get("server_name", "")
        tool_name = block.params.get("tool_name", "")
        raw_arguments = block.params.get("arguments", "").strip()

        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            return ToolResult(
                block.name,
                f"Error executing MCP tool: invalid JSON in arguments: {e}",
                is_error=True,
            )

        try:
            if not await self._approved(block, server_name, tool_name):
                return ToolResult(block.name, "The user denied this operation.", is_error=True)
            result = await self.manager.call_tool(server_name, tool_name, arguments)
        except Exception as e:
            logger.warning(f"MCP tool {server_name}/{tool_name} failed: {e}")
            return ToolResult(block.name, f"Error executing MCP tool: {e}", is_error=True)
        return ToolResult(block.name, f"Tool execution result: {_render(result)}")

    async def _access_mcp_resource(self, block: ToolUse) -> ToolResult:
        server_name = block.params.get("server_name", "")
        uri = block.params.get("uri", "")

        try:
            if not await self._approved(block, server_name, None):
                return ToolResult(block.name, "The user denied this operation.", is_error=True)
            result = await self.manager.read_resource(server_name, uri)
        except Exception as e:
            logger.warning(f"MCP resource {server_name} {uri} failed: {e}")
            return ToolResult(block.name, f"Error accessing MCP resource: {e}", is_error=True)
        return ToolResult(block.name, f"Resource content: {_render(result)}")

    async def _approved(self, block: ToolUse, server_name: str, tool_name: str | None) -> bool:
        if self.approve is None:
            return True
        if tool_name and self.manager.is_auto_approved(server_name, tool_name):
            return True
        return await self.approve(block)


def _render(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2)
