"""
Tool Server Manager — launches and supervises MCP tool server processes.

Each configured server gets one connection that moves through:

    connecting ──► connected ──► disconnected
         │                            ▲
         └────────────────────────────┘   (spawn or discovery failure)

A connection only comes back via an explicit restart, which stops it and
starts a fresh one. One server crashing never touches the others.

Usage:
    manager = ToolServerManager()
    await manager.start_all(ConfigStore().load())

    result = await manager.call_tool("calculator", "calculate", {"expression": "2 + 2"})

    events = manager.subscribe()          # asyncio.Queue[ServerEvent]
    await manager.stop_all()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple

from toolhub.config import ToolServerConfig
from toolhub.errors import (
    MalformedResponseError,
    ServerNotConnectedError,
    ServerNotFoundError,
    ToolHubError,
    ToolNotFoundError,
)
from toolhub.transport import DEFAULT_TIMEOUT, StdioTransport

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE = 0.5


class ServerStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ServerEventType(str, Enum):
    CONNECTING = "server-connecting"
    CONNECTED = "server-connected"
    DISCONNECTED = "server-disconnected"
    ERROR = "server-error"


@dataclass(frozen=True)
class ServerEvent:
    type: ServerEventType
    server_name: str
    error: str | None = None


@dataclass
class ServerConnection:
    """Live state of one tool server. Only the manager mutates it."""
    name: str
    config: ToolServerConfig
    process: Any = None
    transport: StdioTransport | None = None
    status: ServerStatus = ServerStatus.CONNECTING
    error: str | None = None
    tools: list[dict] = field(default_factory=list)
    resources: list[dict] = field(default_factory=list)
    resource_templates: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class ServerInfo:
    """Read-only snapshot of a connection for status displays."""
    name: str
    status: ServerStatus
    error: str | None
    tools: list[dict]
    resources: list[dict]
    resource_templates: list[dict]


class ServerTool(NamedTuple):
    server_name: str
    tool: dict


class ServerResource(NamedTuple):
    server_name: str
    resource: dict


class ServerResourceTemplate(NamedTuple):
    server_name: str
    template: dict


@dataclass
class Capabilities:
    """Everything the connected servers offer, tagged by server."""
    tools: list[ServerTool] = field(default_factory=list)
    resources: list[ServerResource] = field(default_factory=list)
    resource_templates: list[ServerResourceTemplate] = field(default_factory=list)


SpawnFunc = Callable[[ToolServerConfig], Awaitable[Any]]


async def spawn_process(config: ToolServerConfig) -> asyncio.subprocess.Process:
    """Launch a tool server with piped stdio."""
    return await asyncio.create_subprocess_exec(
        config.command,
        *config.args,
        env=config.process_env(),
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


def _discovered(result: Any, key: str) -> list[dict]:
    """The list of descriptors under key. A missing result or key means none."""
    if result is None:
        return []
    if not isinstance(result, dict):
        raise MalformedResponseError(
            f"Expected an object with '{key}', got {type(result).__name__}"
        )
    items = result.get(key)
    if items is None:
        return []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise MalformedResponseError(f"'{key}' must be a list of objects")
    return list(items)


class ToolServerManager:
    """
    Manages the lifecycle of MCP tool server processes.

    Responsibilities:
    - Launch tool servers as subprocesses and discover their capabilities
    - Track connection status and the last error per server
    - Route tool calls and resource reads to the correct server
    - Broadcast status changes to subscribers
    - Graceful shutdown
    """

    def __init__(
        self,
        spawn: SpawnFunc = spawn_process,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ):
        self._spawn = spawn
        self._shutdown_grace = shutdown_grace
        self._connections: dict[str, ServerConnection] = {}
        self._subscribers: list[asyncio.Queue[ServerEvent]] = []
        self._watchers: set[asyncio.Task] = set()

    # ── Events ───────────────────────────────────────────────

    def subscribe(self) -> asyncio.Queue[ServerEvent]:
        """Return a queue that receives every subsequent ServerEvent."""
        queue: asyncio.Queue[ServerEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ServerEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, type: ServerEventType, name: str, error: str | None = None) -> None:
        event = ServerEvent(type=type, server_name=name, error=error)
        for queue in self._subscribers:
            queue.put_nowait(event)

    # ── Lifecycle ────────────────────────────────────────────

    async def start_all(self, configs: dict[str, ToolServerConfig]) -> dict[str, ServerInfo]:
        """Replace all running servers with the enabled ones in configs."""
        for name in list(self._connections):
            await self.stop(name)
        self._connections.clear()

        results = {}
        for name, config in configs.items():
            if not config.enabled:
                logger.info(f"Skipping disabled server: {name}")
                continue
            try:
                results[name] = await self.start(name, config)
            except Exception as e:
                logger.error(f"Failed to start MCP server {name}: {e}")
                self._emit(ServerEventType.ERROR, name, str(e))
        return results

    async def start(self, name: str, config: ToolServerConfig) -> ServerInfo:
        """
        Start a tool server and discover its tools, resources and templates.

        Failures are recorded on the connection (and reported as an error
        event) rather than raised.

        Returns:
            A snapshot of the connection after startup.
        """
        if name in self._connections:
            await self.stop(name)

        conn = ServerConnection(name=name, config=config)
        self._connections[name] = conn
        self._emit(ServerEventType.CONNECTING, name)
        logger.info(f"Starting {name}: {' '.join([config.command, *config.args])}")

        try:
            process = await self._spawn(config)
        except Exception as e:
            self._fail(conn, f"Failed to start MCP server {name}: {e}")
            return self._snapshot(conn)

        if not self._owns(conn) or conn.status is ServerStatus.DISCONNECTED:
            # Stopped or replaced while spawning.
            logger.info(f"Discarding {name} process started after stop")
            await self._close_process(process, None)
            return self._snapshot(conn)

        transport = StdioTransport(
            process,
            name=name,
            default_timeout=config.timeout or DEFAULT_TIMEOUT,
        )
        transport.start()
        conn.process = process
        conn.transport = transport
        watcher = asyncio.create_task(self._watch_exit(conn, transport))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        try:
            tools = _discovered(await transport.list_tools(), "tools")
            resources = _discovered(await transport.list_resources(), "resources")
            templates = _discovered(
                await transport.list_resource_templates(), "resourceTemplates"
            )
        except ToolHubError as e:
            logger.error(f"Failed to fetch capabilities for MCP server {name}: {e}")
            if conn.transport is transport:
                conn.process = None
                conn.transport = None
                self._fail(conn, str(e))
            await self._close_process(process, transport)
            return self._snapshot(conn)

        if conn.transport is not transport:
            # Stopped or exited while discovering.
            return self._snapshot(conn)

        conn.tools = tools
        conn.resources = resources
        conn.resource_templates = templates
        logger.info(f"Started {name}: tools={[t.get('name') for t in tools]}")
        conn.status = ServerStatus.CONNECTED
        self._emit(ServerEventType.CONNECTED, name)
        return self._snapshot(conn)

    async def stop(self, name: str) -> None:
        """Stop a tool server. Unknown names are ignored."""
        conn = self._connections.get(name)
        if not conn:
            return

        process, transport = conn.process, conn.transport
        conn.status = ServerStatus.DISCONNECTED
        conn.process = None
        conn.transport = None
        if process is not None:
            await self._close_process(process, transport)
        logger.info(f"Stopped {name}")
        self._emit(ServerEventType.DISCONNECTED, name)

    async def stop_all(self) -> None:
        """Stop all running servers."""
        for name in list(self._connections):
            await self.stop(name)

    async def restart(self, name: str) -> ServerInfo:
        """Stop a server and start it again as a fresh connection."""
        conn = self._connections.get(name)
        if not conn:
            raise ServerNotFoundError(name)
        return await self.start(name, conn.config)

    # ── Calls ────────────────────────────────────────────────

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> Any:
        """
        Call a tool on a specific server.

        Raises:
            ServerNotFoundError, ServerNotConnectedError, ToolNotFoundError,
            or any TransportError from the call itself.
        """
        conn = self._connected(server_name)
        if not any(t.get("name") == tool_name for t in conn.tools):
            raise ToolNotFoundError(server_name, tool_name)

        logger.info(f"Calling {server_name}/{tool_name}")
        return await conn.transport.call_tool(tool_name, arguments)

    async def read_resource(self, server_name: str, uri: str) -> Any:
        """Read a resource. The uri is not checked against discovery, since templates allow any match."""
        conn = self._connected(server_name)
        logger.info(f"Reading {uri} from {server_name}")
        return await conn.transport.read_resource(uri)

    # ── Queries ──────────────────────────────────────────────

    def get_server_status(self, name: str) -> ServerStatus | None:
        conn = self._connections.get(name)
        return conn.status if conn else None

    def get_server(self, name: str) -> ServerInfo | None:
        conn = self._connections.get(name)
        return self._snapshot(conn) if conn else None

    def get_all_servers(self) -> dict[str, ServerInfo]:
        return {name: self._snapshot(c) for name, c in self._connections.items()}

    def list_tools(self, server_name: str) -> list[dict]:
        """List discovered tools for a server."""
        conn = self._connections.get(server_name)
        return list(conn.tools) if conn else []

    def is_running(self, server_name: str) -> bool:
        return self.get_server_status(server_name) == ServerStatus.CONNECTED

    def is_auto_approved(self, server_name: str, tool_name: str) -> bool:
        conn = self._connections.get(server_name)
        return conn is not None and tool_name in conn.config.auto_approve

    def get_all_tools_and_resources(self) -> Capabilities:
        """Aggregate capabilities across connected servers only."""
        capabilities = Capabilities()
        for name, conn in self._connections.items():
            if conn.status != ServerStatus.CONNECTED:
                continue
            capabilities.tools.extend(ServerTool(name, t) for t in conn.tools)
            capabilities.resources.extend(ServerResource(name, r) for r in conn.resources)
            capabilities.resource_templates.extend(
                ServerResourceTemplate(name, t) for t in conn.resource_templates
            )
        return capabilities

    # ── Internals ────────────────────────────────────────────

    def _owns(self, conn: ServerConnection) -> bool:
        return self._connections.get(conn.name) is conn

    def _connected(self, server_name: str) -> ServerConnection:
        conn = self._connections.get(server_name)
        if not conn:
            raise ServerNotFoundError(server_name)
        if conn.status != ServerStatus.CONNECTED or conn.transport is None:
            raise ServerNotConnectedError(server_name)
        return conn

    def _fail(self, conn: ServerConnection, error: str) -> None:
        conn.status = ServerStatus.DISCONNECTED
        conn.error = error
        logger.error(error)
        if self._owns(conn):
            self._emit(ServerEventType.ERROR, conn.name, error)

    @staticmethod
    def _snapshot(conn: ServerConnection) -> ServerInfo:
        return ServerInfo(
            name=conn.name,
            status=conn.status,
            error=conn.error,
            tools=list(conn.tools),
            resources=list(conn.resources),
            resource_templates=list(conn.resource_templates),
        )

    async def _watch_exit(self, conn: ServerConnection, transport: StdioTransport) -> None:
        code = await transport.wait_closed()
        if conn.transport is not transport or not self._owns(conn):
            return

        conn.status = ServerStatus.DISCONNECTED
        conn.process = None
        conn.transport = None
        if not conn.error:
            conn.error = f"Server process exited unexpectedly with code {code}"
        logger.warning(f"MCP server {conn.name} disconnected: {conn.error}")
        self._emit(ServerEventType.DISCONNECTED, conn.name, conn.error)

    async def _close_process(self, process: Any, transport: StdioTransport | None) -> None:
        """Close stdin, give the server a moment to exit, then kill it."""
        if transport is not None:
            transport.close_stdin()
        elif process.stdin is not None:
            process.stdin.close()

        try:
            await asyncio.wait_for(process.wait(), self._shutdown_grace)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
