"""
Transport layer for tool server communication.

StdioTransport speaks line-delimited JSON over a child process's
stdin/stdout pipes. Unlike a blocking request/readline loop, responses
are correlated to requests by id, so several calls may be in flight on
one process and the server is free to answer them in any order:

    call("listTools") ──► {"id": "a1", ...}\\n ──► stdin
    call("callTool")  ──► {"id": "b2", ...}\\n ──► stdin
                                                   │
    future "b2" resolved ◄── {"id": "b2", ...}\\n ◄─┤ stdout
    future "a1" resolved ◄── {"id": "a1", ...}\\n ◄─┘

Every request carries its own timer. When the process exits, all
outstanding requests are rejected and wait_closed() resolves once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from toolhub.errors import (
    JsonRpcError,
    RequestTimeoutError,
    TransportClosedError,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2.0"
DEFAULT_TIMEOUT = 60.0
READ_CHUNK_SIZE = 65536
NOTIFICATION_BACKLOG = 100


@dataclass
class JsonRpcRequest:
    """Request envelope written to the tool server."""
    method: str
    params: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        return json.dumps({
            "protocolVersion": PROTOCOL_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        })


@dataclass
class JsonRpcResponse:
    """Response envelope read from the tool server."""
    id: str | None
    result: Any = None
    error: Any = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "JsonRpcResponse":
        return cls(
            id=message.get("id"),
            result=message.get("result"),
            error=message.get("error"),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class PendingRequest:
    """An in-flight call awaiting its response."""
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


class StdioTransport:
    """
    JSON-RPC over the stdin/stdout pipes of an already spawned process.

    The process object only needs the asyncio.subprocess.Process surface
    used here: stdin.write()/drain()/close(), stdout.read(),
    stderr.read() and wait().
    """

    def __init__(
        self,
        process: Any,
        name: str = "tool-server",
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            process: The running tool server process.
            name: Label used in log messages.
            default_timeout: Seconds to wait for a response when a call
                             does not pass its own timeout.
        """
        self.process = process
        self.name = name
        self.default_timeout = default_timeout
        self.notifications: asyncio.Queue[dict[str, Any]] = asyncio.Queue(NOTIFICATION_BACKLOG)
        self._pending: dict[str, PendingRequest] = {}
        self._buffer = b""
        self._closed = False
        self._exit_code: int | None = None
        self._exited: asyncio.Future | None = None
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        """Begin reading the process's output streams."""
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._exited = loop.create_future()
        reader = loop.create_task(self._read_stdout())
        self._tasks = [
            reader,
            loop.create_task(self._read_stderr()),
            loop.create_task(self._watch_exit(reader)),
        ]

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_closed(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        if self._exited is None:
            raise RuntimeError("Transport not started. Call start() first.")
        return await asyncio.shield(self._exited)

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send a request and wait for the matching response.

        Raises:
            TransportClosedError: the process has exited or stdin is gone.
            RequestTimeoutError: no response arrived within the timeout.
            JsonRpcError: the server answered with an error.
        """
        if self._closed:
            raise TransportClosedError(f"MCP server {self.name} is not connected")

        request = JsonRpcRequest(method=method, params=params or {})
        if timeout is None:
            timeout = self.default_timeout
        loop = asyncio.get_running_loop()
        pending = PendingRequest(method=method, future=loop.create_future())
        pending.timer = loop.call_later(timeout, self._expire, request.id, timeout)
        self._pending[request.id] = pending

        try:
            try:
                self.process.stdin.write((request.to_json() + "\n").encode())
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                raise TransportClosedError(
                    f"Failed to write to MCP server {self.name}: {e}"
                ) from e
            logger.debug(f"[{self.name}] -> {method} ({request.id})")
            return await pending.future
        finally:
            if pending.timer:
                pending.timer.cancel()
            self._pending.pop(request.id, None)

    def close_stdin(self) -> None:
        """Close the process's input stream, asking the server to exit."""
        try:
            self.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"[{self.name}] stdin already closed: {e}")

    # ── MCP operations ───────────────────────────────────────

    async def list_tools(self) -> dict[str, Any]:
        return await self.call("listTools", {})

    async def list_resources(self) -> dict[str, Any]:
        return await self.call("listResources", {})

    async def list_resource_templates(self) -> dict[str, Any]:
        return await self.call("listResourceTemplates", {})

    async def call_tool(self, name: str, arguments: Any) -> Any:
        return await self.call("callTool", {"name": name, "arguments": arguments})

    async def read_resource(self, uri: str) -> Any:
        return await self.call("readResource", {"uri": uri})

    # ── Internals ────────────────────────────────────────────

    def _expire(self, request_id: str, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending and not pending.future.done():
            logger.warning(f"[{self.name}] {pending.method} timed out after {timeout:g}s")
            pending.future.set_exception(RequestTimeoutError(pending.method, timeout))

    async def _read_stdout(self) -> None:
        while True:
            chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._buffer += chunk
            *lines, self._buffer = self._buffer.split(b"\n")
            for line in lines:
                self._handle_line(line)

        if self._buffer.strip():
            logger.warning(f"[{self.name}] Discarding unterminated output: {self._buffer[:200]!r}")
        self._buffer = b""

    async def _read_stderr(self) -> None:
        if self.process.stderr is None:
            return
        while True:
            chunk = await self.process.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in chunk.decode(errors="replace").splitlines():
                if line.strip():
                    logger.debug(f"[{self.name}] stderr: {line}")

    def _handle_line(self, raw: bytes) -> None:
        line = raw.strip()
        if not line:
            return

        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"[{self.name}] Dropping unparseable line ({e}): {line[:200]!r}")
            return

        if not isinstance(message, dict):
            logger.warning(f"[{self.name}] Dropping non-object message: {line[:200]!r}")
            return

        response = JsonRpcResponse.from_message(message)
        pending = self._pending.pop(response.id, None) if isinstance(response.id, str) else None
        if pending is None:
            logger.debug(f"[{self.name}] Notification: {message}")
            if self.notifications.full():
                # Nobody is reading; keep only the most recent.
                self.notifications.get_nowait()
            self.notifications.put_nowait(message)
            return

        if pending.timer:
            pending.timer.cancel()
        if pending.future.done():
            return
        if response.is_error:
            pending.future.set_exception(JsonRpcError.from_payload(response.error))
        else:
            pending.future.set_result(response.result)

    async def _watch_exit(self, reader: asyncio.Task) -> None:
        code = await self.process.wait()
        # Responses written just before exit are still delivered.
        await asyncio.wait({reader})

        self._closed = True
        self._exit_code = code
        error_message = f"MCP server process exited with code {code}"
        for request_id, pending in list(self._pending.items()):
            if pending.timer:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(TransportClosedError(error_message))
            del self._pending[request_id]

        logger.info(f"[{self.name}] {error_message}")
        if self._exited is not None and not self._exited.done():
            self._exited.set_result(code)
