"""Tests for wrapping tool server tools as LangChain tools."""

import json

import pytest

from toolhub.bridge import langchain_tools, mcp_to_langchain_tool, tool_id
from toolhub.manager import ToolServerManager
from tests.fakes import ECHO_TOOL, FakeSpawner, ScriptedToolServer, make_config

ADD_TOOL = {
    "name": "add",
    "description": "Adds two numbers.",
    "inputSchema": {
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    },
}


@pytest.fixture
async def manager():
    spawner = FakeSpawner({
        "echo": ScriptedToolServer,
        "math": lambda: ScriptedToolServer(tools=[ADD_TOOL]),
    })
    manager = ToolServerManager(spawn=spawner, shutdown_grace=0.05)
    await manager.start_all({"echo": make_config("echo"), "math": make_config("math")})
    yield manager
    await manager.stop_all()


class TestMcpToLangchainTool:
    async def test_uses_discovered_name_and_description(self, manager) -> None:
        tool = mcp_to_langchain_tool(manager, "math", "add")

        assert tool.name == "math__add"
        assert tool.description == "Adds two numbers."

    async def test_description_override(self, manager) -> None:
        tool = mcp_to_langchain_tool(manager, "math", "add", description_override="Sum.")

        assert tool.description == "Sum."

    async def test_invoke_calls_the_server(self, manager) -> None:
        tool = mcp_to_langchain_tool(manager, "echo", "echo")

        output = await tool.ainvoke({"message": "hi"})

        text = json.loads(output)["content"][0]["text"]
        assert json.loads(text) == {"tool": "echo", "arguments": {"message": "hi"}}

    async def test_errors_come_back_as_text(self, manager) -> None:
        tool = mcp_to_langchain_tool(manager, "echo", "echo")
        await manager.stop("echo")

        output = await tool.ainvoke({"message": "hi"})

        assert output == "Error calling echo/echo: MCP server echo is not connected"

    async def test_unknown_tool_gets_a_generic_description(self, manager) -> None:
        tool = mcp_to_langchain_tool(manager, "math", "divide")

        assert tool.description == "MCP tool: math/divide"


class TestLangchainTools:
    async def test_wraps_every_connected_tool(self, manager) -> None:
        tools = langchain_tools(manager)

        assert sorted(t.name for t in tools) == ["echo", "math__add"]

    async def test_skips_disconnected_servers(self, manager) -> None:
        await manager.stop("math")

        assert [t.name for t in langchain_tools(manager)] == [ECHO_TOOL["name"]]


def test_tool_id() -> None:
    assert tool_id("calculator", "calculate") == "calculator__calculate"
    assert tool_id("echo", "echo") == "echo"
