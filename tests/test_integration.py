"""End-to-end tests against real tool server subprocesses."""

import asyncio
import sys
import time
from pathlib import Path

import pytest

from toolhub.config import ToolServerConfig
from toolhub.errors import RequestTimeoutError, TransportClosedError
from toolhub.manager import ServerEventType, ServerStatus, ToolServerManager

ROOT = Path(__file__).resolve().parent.parent
MOCK_SERVER = Path(__file__).resolve().parent / "mock_tool_server.py"


def python_server(name: str, *args: str, timeout: float | None = None) -> ToolServerConfig:
    return ToolServerConfig(
        name=name,
        command=sys.executable,
        args=list(args),
        env={"PYTHONPATH": str(ROOT)},
        timeout=timeout,
    )


def mock_server(name: str, *flags: str, timeout: float | None = None) -> ToolServerConfig:
    return python_server(name, str(MOCK_SERVER), *flags, timeout=timeout)


@pytest.fixture
async def manager():
    manager = ToolServerManager(shutdown_grace=0.5)
    yield manager
    await manager.stop_all()


class TestRealServers:
    async def test_echo_server_round_trip(self, manager) -> None:
        info = await manager.start("echo", python_server("echo", "-m", "toolhub.servers.echo"))

        assert info.status == ServerStatus.CONNECTED, info.error
        assert [t["name"] for t in info.tools] == ["echo"]

        result = await manager.call_tool("echo", "echo", {"message": "ping"})
        assert '"echoed": "ping"' in result["content"][0]["text"]

        resource = await manager.read_resource("echo", "echo://messages/hello")
        assert resource["contents"][0]["text"] == "hello"

    async def test_several_servers_at_once(self, manager) -> None:
        await manager.start_all({
            "echo": python_server("echo", "-m", "toolhub.servers.echo"),
            "calculator": python_server("calculator", "-m", "toolhub.servers.calculator"),
            "missing": ToolServerConfig(name="missing", command="definitely-not-a-real-binary"),
        })

        assert manager.is_running("echo")
        assert manager.is_running("calculator")
        assert manager.get_server_status("missing") == ServerStatus.DISCONNECTED

        result = await manager.call_tool("calculator", "calculate", {"expression": "6 * 7"})
        assert '"result": 42' in result["content"][0]["text"]

    async def test_discovery_failure_is_recorded(self, manager) -> None:
        info = await manager.start("mock", mock_server("mock", "--fail-discovery"))

        assert info.status == ServerStatus.DISCONNECTED
        assert info.error == "Mock discovery failure"

    async def test_crash_mid_call_rejects_and_disconnects(self, manager) -> None:
        await manager.start("mock", mock_server("mock"))
        events = manager.subscribe()

        with pytest.raises(TransportClosedError, match="exited with code 3"):
            await manager.call_tool("mock", "crash", {})

        event = await asyncio.wait_for(events.get(), 5)
        assert event.type == ServerEventType.DISCONNECTED
        assert manager.get_server("mock").error == "Server process exited unexpectedly with code 3"

    async def test_slow_tool_times_out(self, manager) -> None:
        await manager.start("mock", mock_server("mock", timeout=0.5))

        with pytest.raises(RequestTimeoutError):
            await manager.call_tool("mock", "sleep", {"seconds": 5})

        assert manager.is_running("mock")

    async def test_stop_kills_a_server_that_ignores_stdin_close(self, manager) -> None:
        await manager.start("mock", mock_server("mock", "--ignore-stdin-close"))
        assert manager.is_running("mock")

        started = time.monotonic()
        await asyncio.wait_for(manager.stop("mock"), 10)

        assert time.monotonic() - started < 5
        assert manager.get_server_status("mock") == ServerStatus.DISCONNECTED
