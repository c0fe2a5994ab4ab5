"""
Echo server — the smallest useful tool server.

Repeats what it is sent, and keeps the last few messages as resources,
so discovery, tool calls and resource reads can all be tried against it.

    python -m toolhub.servers.echo

    echo '{"protocolVersion":"2.0","id":"1","method":"listTools","params":{}}' \\
        | python -m toolhub.servers.echo
"""

import time
from collections import deque

from toolhub.server import StdioToolServer, ToolHandler

HISTORY_SIZE = 20


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {"message": {"type": "string", "description": "Text to send back"}}
    required = ["message"]

    def __init__(self, history: deque | None = None):
        self.history = history if history is not None else deque(maxlen=HISTORY_SIZE)

    def handle(self, params: dict) -> dict:
        message = str(params.get("message", ""))
        self.history.append(message)
        return {"echoed": message, "length": len(message)}


def build_server() -> StdioToolServer:
    started = time.monotonic()
    history: deque = deque(maxlen=HISTORY_SIZE)

    server = StdioToolServer()
    server.register(EchoTool(history))
    server.add_resource(
        "echo://status",
        "Server status",
        lambda uri: f"echo server up for {time.monotonic() - started:.1f}s, {len(history)} message(s) echoed",
    )
    server.add_resource(
        "echo://history",
        "Recently echoed messages",
        lambda uri: "\n".join(history),
    )
    server.add_resource_template(
        "echo://messages/{message}",
        "Echoed message",
        lambda uri: uri.removeprefix("echo://messages/"),
    )
    return server


if __name__ == "__main__":
    build_server().run()
