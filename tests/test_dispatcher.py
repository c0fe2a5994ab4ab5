"""Tests for ToolDispatcher — routing, error rendering and the one-tool-per-turn rule."""

import json

import pytest

from toolhub.dispatcher import ToolDispatcher
from toolhub.local_tools import LocalTools
from toolhub.manager import ServerStatus, ToolServerManager
from toolhub.parser import ToolUse
from tests.fakes import FakeSpawner, ScriptedToolServer, make_config


@pytest.fixture
def spawner():
    return FakeSpawner({
        "echo": ScriptedToolServer,
        "slow": lambda: ScriptedToolServer(silent_methods=("callTool",)),
    })


@pytest.fixture
async def manager(spawner):
    manager = ToolServerManager(spawn=spawner, shutdown_grace=0.05)
    await manager.start_all({
        "echo": make_config("echo", auto_approve=["echo"]),
        "slow": make_config("slow", timeout=0.05),
        "down": make_config("down"),
    })
    yield manager
    await manager.stop_all()


@pytest.fixture
def dispatcher(manager, tmp_path):
    return ToolDispatcher(manager, LocalTools(tmp_path))


def mcp_tool(server: str, tool: str, arguments: str = "{}") -> ToolUse:
    return ToolUse("use_mcp_tool", {"server_name": server, "tool_name": tool, "arguments": arguments})


class TestMcpTools:
    async def test_successful_call_renders_result(self, dispatcher) -> None:
        result = await dispatcher.dispatch(mcp_tool("echo", "echo", '{"message": "hi"}'))

        assert result.content.startswith("Tool execution result: ")
        assert not result.is_error
        payload = json.loads(result.content.removeprefix("Tool execution result: "))
        assert json.loads(payload["content"][0]["text"]) == {
            "tool": "echo",
            "arguments": {"message": "hi"},
        }

    async def test_unconnected_server_is_reported_not_raised(self, dispatcher, manager) -> None:
        result = await dispatcher.dispatch(mcp_tool("down", "echo"))

        assert result.is_error
        assert "not connected" in result.content
        assert manager.get_server_status("down") == ServerStatus.DISCONNECTED

    async def test_unknown_tool_is_reported_not_raised(self, dispatcher, manager) -> None:
        result = await dispatcher.dispatch(mcp_tool("echo", "nope"))

        assert result.is_error
        assert "not found" in result.content
        assert manager.get_server_status("echo") == ServerStatus.CONNECTED

    async def test_unknown_server_is_reported(self, dispatcher) -> None:
        result = await dispatcher.dispatch(mcp_tool("ghost", "echo"))

        assert result.content == "Error executing MCP tool: MCP server ghost not found"

    async def test_malformed_arguments_are_reported(self, dispatcher) -> None:
        result = await dispatcher.dispatch(mcp_tool("echo", "echo", "{not json"))

        assert result.is_error
        assert "invalid JSON" in result.content

    async def test_missing_arguments_default_to_empty_object(self, dispatcher) -> None:
        block = ToolUse("use_mcp_tool", {"server_name": "echo", "tool_name": "echo"})

        result = await dispatcher.dispatch(block)

        assert not result.is_error

    async def test_timeout_is_reported_and_server_stays_connected(self, dispatcher, manager) -> None:
        result = await dispatcher.dispatch(mcp_tool("slow", "echo"))

        assert "timed out" in result.content
        assert manager.is_running("slow")

    async def test_read_resource(self, dispatcher) -> None:
        block = ToolUse("access_mcp_resource", {"server_name": "echo", "uri": "test://status"})

        result = await dispatcher.dispatch(block)

        assert result.content.startswith("Resource content: ")
        assert "resource text" in result.content

    async def test_read_resource_error_is_reported(self, dispatcher) -> None:
        block = ToolUse("access_mcp_resource", {"server_name": "down", "uri": "test://status"})

        result = await dispatcher.dispatch(block)

        assert result.content.startswith("Error accessing MCP resource: ")
        assert "not connected" in result.content


class TestOneToolPerTurn:
    async def test_second_tool_in_a_turn_is_rejected(self, dispatcher, manager) -> None:
        first = await dispatcher.dispatch(mcp_tool("echo", "echo"))
        second = await dispatcher.dispatch(mcp_tool("echo", "echo"))

        assert first.executed
        assert not second.executed
        assert "only one tool may be used per message" in second.content

    async def test_rejected_tool_does_not_reach_the_server(self, dispatcher, spawner) -> None:
        process = spawner.processes["echo"]
        await dispatcher.dispatch(ToolUse("list_files", {"path": "."}))

        await dispatcher.dispatch(mcp_tool("echo", "echo"))

        assert process.request_ids("callTool") == []

    async def test_begin_turn_allows_the_next_tool(self, dispatcher) -> None:
        await dispatcher.dispatch(mcp_tool("echo", "echo"))
        dispatcher.begin_turn()

        result = await dispatcher.dispatch(mcp_tool("echo", "echo"))

        assert result.executed

    async def test_failed_tool_still_uses_up_the_turn(self, dispatcher) -> None:
        await dispatcher.dispatch(mcp_tool("down", "echo"))

        result = await dispatcher.dispatch(mcp_tool("echo", "echo"))

        assert not result.executed

    async def test_partial_block_cannot_be_dispatched(self, dispatcher) -> None:
        with pytest.raises(ValueError, match="partial"):
            await dispatcher.dispatch(ToolUse("read_file", {"path": "a"}, partial=True))


class TestApproval:
    async def test_denied_call_is_not_executed(self, manager, tmp_path) -> None:
        async def deny(block):
            return False

        dispatcher = ToolDispatcher(manager, LocalTools(tmp_path), approve=deny)

        result = await dispatcher.dispatch(mcp_tool("slow", "echo"))

        assert result.content == "The user denied this operation."

    async def test_auto_approved_tool_skips_the_prompt(self, manager, tmp_path) -> None:
        asked = []

        async def deny(block):
            asked.append(block)
            return False

        dispatcher = ToolDispatcher(manager, LocalTools(tmp_path), approve=deny)

        result = await dispatcher.dispatch(mcp_tool("echo", "echo"))

        assert asked == []
        assert result.content.startswith("Tool execution result: ")

    async def test_approval_errors_become_result_text(self, manager, tmp_path) -> None:
        async def broken(block):
            raise RuntimeError("prompt closed")

        dispatcher = ToolDispatcher(manager, LocalTools(tmp_path), approve=broken)

        result = await dispatcher.dispatch(mcp_tool("slow", "echo"))

        assert result.content == "Error executing MCP tool: prompt closed"


class TestLocalTools:
    async def test_local_tool_is_routed(self, dispatcher, tmp_path) -> None:
        (tmp_path / "a.txt").write_text("hello")

        result = await dispatcher.dispatch(ToolUse("read_file", {"path": "a.txt"}))

        assert result.content == "Content of a.txt:\n\nhello"

    async def test_local_tool_error_is_reported(self, dispatcher) -> None:
        result = await dispatcher.dispatch(ToolUse("read_file", {"path": "missing.txt"}))

        assert result.is_error
        assert result.content.startswith("Error executing read_file: ")

    async def test_missing_required_param_is_reported(self, dispatcher) -> None:
        result = await dispatcher.dispatch(ToolUse("write_to_file", {"path": "a.txt"}))

        assert "missing required parameter(s): content" in result.content

    async def test_recursive_flag_is_parsed(self, dispatcher, tmp_path) -> None:
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "deep.txt").write_text("x")

        result = await dispatcher.dispatch(
            ToolUse("list_files", {"path": ".", "recursive": "true"})
        )

        assert "sub/deep.txt" in result.content

    async def test_unknown_tool(self, dispatcher) -> None:
        result = await dispatcher.dispatch(ToolUse("browser_action", {}))

        assert result.content == "Tool browser_action is not implemented yet."
