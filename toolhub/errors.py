"""Exception types raised by toolhub."""

from __future__ import annotations


class ToolHubError(Exception):
    """Base class for all toolhub errors."""


# ── Transport ────────────────────────────────────────────────


class TransportError(ToolHubError):
    """Raised when a request cannot be completed over a transport."""


class RequestTimeoutError(TransportError):
    """Raised when a tool server does not answer within the timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class TransportClosedError(TransportError):
    """Raised when the tool server process has exited or cannot be written to."""


class JsonRpcError(TransportError):
    """An error response returned by the tool server."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code

    @classmethod
    def from_payload(cls, error: object) -> "JsonRpcError":
        if isinstance(error, dict):
            message = error.get("message") or "Unknown error"
            code = error.get("code")
            return cls(str(message), code if isinstance(code, int) else None)
        return cls(str(error) if error else "Unknown error")


class MalformedResponseError(TransportError):
    """Raised when a tool server answers with a result of the wrong shape."""


# ── Registry ─────────────────────────────────────────────────


class ServerNotFoundError(ToolHubError):
    def __init__(self, server_name: str) -> None:
        super().__init__(f"MCP server {server_name} not found")
        self.server_name = server_name


class ServerNotConnectedError(ToolHubError):
    def __init__(self, server_name: str) -> None:
        super().__init__(f"MCP server {server_name} is not connected")
        self.server_name = server_name


class ToolNotFoundError(ToolHubError):
    def __init__(self, server_name: str, tool_name: str) -> None:
        super().__init__(f"Tool {tool_name} not found in MCP server {server_name}")
        self.server_name = server_name
        self.tool_name = tool_name


# ── Config ───────────────────────────────────────────────────


class ConfigError(ToolHubError):
    """Raised when the server configuration cannot be read or updated."""
