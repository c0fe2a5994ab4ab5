"""
Stdio tool server.

The other end of StdioTransport: a plain synchronous process that reads
one JSON request per line on stdin and answers with one JSON line on
stdout. Logging goes to stderr, so it never mixes with protocol output.

    from toolhub.server import StdioToolServer, ToolHandler

    class Reverse(ToolHandler):
        name = "reverse"
        description = "Reverses a string"
        parameters = {"text": {"type": "string"}}
        required = ["text"]

        def handle(self, params):
            return params["text"][::-1]

    if __name__ == "__main__":
        server = StdioToolServer()
        server.register(Reverse())
        server.add_resource("reverse://stats", "Stats", lambda uri: "0 calls")
        server.run()
"""

from __future__ import annotations

import json
import logging
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TextIO

from toolhub.transport import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

ResourceReader = Callable[[str], str]


class NotFoundError(LookupError):
    """Unknown method, tool or resource; answered with METHOD_NOT_FOUND."""


class ToolHandler(ABC):
    """One tool a server offers. Set the class attributes and implement handle()."""

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Run the tool.

        Returns a string, or anything JSON-serializable, which is sent
        back as the text of the call result. Raise to report a failure.
        """
        ...

    def get_schema(self) -> dict:
        """Descriptor returned by listTools."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


@dataclass
class _Resource:
    descriptor: dict
    reader: ResourceReader
    pattern: re.Pattern | None = None


def _template_pattern(uri_template: str) -> re.Pattern:
    """echo://messages/{message} → ^echo://messages/(?P<message>[^/]+)$"""
    parts = re.split(r"\{(\w+)\}", uri_template)
    regex = "".join(
        f"(?P<{part}>[^/]+)" if i % 2 else re.escape(part)
        for i, part in enumerate(parts)
    )
    return re.compile(f"^{regex}$")


class StdioToolServer:
    """
    Serves registered tools and resources over stdin/stdout.

    Methods answered:
        ping, listTools, listResources, listResourceTemplates,
        callTool  → {"content": [{"type": "text", "text": ...}]}
        readResource → {"contents": [{"uri": ..., "text": ...}]}
    """

    def __init__(self):
        self._tools: dict[str, ToolHandler] = {}
        self._resources: dict[str, _Resource] = {}
        self._templates: list[_Resource] = []
        self._out: TextIO = sys.stdout

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._tools[handler.name] = handler
        logger.debug(f"Registered tool {handler.name}")

    def add_resource(
        self,
        uri: str,
        name: str,
        reader: ResourceReader,
        mime_type: str = "text/plain",
    ) -> None:
        descriptor = {"uri": uri, "name": name, "mimeType": mime_type}
        self._resources[uri] = _Resource(descriptor, reader)

    def add_resource_template(
        self,
        uri_template: str,
        name: str,
        reader: ResourceReader,
        mime_type: str = "text/plain",
    ) -> None:
        """Serve every uri matching uri_template, e.g. notes://{id}."""
        descriptor = {"uriTemplate": uri_template, "name": name, "mimeType": mime_type}
        self._templates.append(_Resource(descriptor, reader, _template_pattern(uri_template)))

    def run(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Answer requests until stdin reaches EOF."""
        self._out = stdout or sys.stdout
        logger.info(f"Serving {len(self._tools)} tool(s): {', '.join(self._tools)}")
        for line in stdin or sys.stdin:
            self.handle_line(line)

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            self._send(None, error={"code": PARSE_ERROR, "message": f"Parse error: {e}"})
            return

        request_id = request.get("id")
        try:
            result = self._dispatch(request.get("method", ""), request.get("params") or {})
        except NotFoundError as e:
            self._send(request_id, error={"code": METHOD_NOT_FOUND, "message": str(e)})
        except Exception as e:
            logger.warning(f"Request {request_id} failed: {e}")
            self._send(request_id, error={"code": INTERNAL_ERROR, "message": str(e)})
        else:
            self._send(request_id, result=result)

    def _dispatch(self, method: str, params: dict) -> Any:
        if method == "ping":
            return {"status": "ok", "tools": list(self._tools)}
        if method == "listTools":
            return {"tools": [t.get_schema() for t in self._tools.values()]}
        if method == "listResources":
            return {"resources": [r.descriptor for r in self._resources.values()]}
        if method == "listResourceTemplates":
            return {"resourceTemplates": [t.descriptor for t in self._templates]}
        if method == "callTool":
            return self._call_tool(params.get("name", ""), params.get("arguments") or {})
        if method == "readResource":
            uri = params.get("uri", "")
            return {"contents": [{"uri": uri, "text": self._read(uri)}]}
        raise NotFoundError(f"Unknown method: '{method}'")

    def _call_tool(self, name: str, arguments: dict) -> dict:
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: '{name}'. Available: {list(self._tools)}")
        result = tool.handle(arguments)
        text = result if isinstance(result, str) else json.dumps(result)
        return {"content": [{"type": "text", "text": text}]}

    def _read(self, uri: str) -> str:
        resource = self._resources.get(uri)
        if resource is not None:
            return resource.reader(uri)
        for template in self._templates:
            if template.pattern.match(uri):
                return template.reader(uri)
        raise NotFoundError(f"Unknown resource: '{uri}'")

    def _send(self, request_id: Any, **body: Any) -> None:
        message = {"protocolVersion": PROTOCOL_VERSION, "id": request_id, **body}
        self._out.write(json.dumps(message) + "\n")
        self._out.flush()
