"""
Streaming parser for assistant output.

The model invokes tools with XML-style blocks, one tag per line:

    I'll check the file first.
    <read_file>
    <path>src/main.py</path>
    </read_file>

parse_assistant_message() turns such text into an ordered list of
TextBlock / ToolUse blocks. Only the last block can be partial: a tool
block is partial until its closing tag arrives, trailing text is partial
while the stream is still open.

MessageParser wraps it for a live token stream and reports each block
the moment it becomes final, so a tool never fires on half its input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

_OPEN_TAG = re.compile(r"^<([A-Za-z_][A-Za-z0-9_]*)>$")
_PARAM_OPEN = re.compile(r"^<([A-Za-z_][A-Za-z0-9_]*)>(.*)$", re.DOTALL)


@dataclass
class TextBlock:
    content: str
    partial: bool = False
    type: str = field(default="text", init=False)


@dataclass
class ToolUse:
    name: str
    params: dict[str, str] = field(default_factory=dict)
    partial: bool = False
    type: str = field(default="tool_use", init=False)


ContentBlock = Union[TextBlock, ToolUse]


class _State(Enum):
    SCANNING = "scanning"
    IN_TOOL = "in_tool"
    IN_PARAM = "in_param"


def _clean(value: str) -> str:
    return value.rstrip("\r\n")


class _Machine:
    """Line-at-a-time state machine behind parse_assistant_message()."""

    def __init__(self) -> None:
        self.blocks: list[ContentBlock] = []
        self.state = _State.SCANNING
        self.text_lines: list[str] = []
        self.tool_name = ""
        self.params: dict[str, str] = {}
        self.param_name = ""
        self.param_value = ""

    def feed_line(self, line: str) -> None:
        if self.state is _State.SCANNING:
            self._scan(line)
        elif self.state is _State.IN_TOOL:
            self._tool_body(line)
        else:
            self._param_body(line)

    def _scan(self, line: str) -> None:
        match = _OPEN_TAG.match(line.strip())
        if not match:
            self.text_lines.append(line)
            return
        self._flush_text(partial=False)
        self.tool_name = match.group(1)
        self.params = {}
        self.state = _State.IN_TOOL

    def _tool_body(self, line: str) -> None:
        stripped = line.strip()
        if stripped == f"</{self.tool_name}>":
            self.blocks.append(ToolUse(self.tool_name, self._clean_params(), partial=False))
            self.state = _State.SCANNING
            return

        match = _PARAM_OPEN.match(line.lstrip())
        if not match:
            return
        self.param_name, rest = match.group(1), match.group(2)
        self.param_value = ""
        self.state = _State.IN_PARAM
        if rest:
            self._param_body(rest)

    def _param_body(self, line: str) -> None:
        close = f"</{self.param_name}>"
        end = line.find(close)
        if end == -1:
            self.param_value += line + "\n"
            return
        self.param_value += line[:end]
        self.params[self.param_name] = self.param_value
        self.param_name = ""
        self.param_value = ""
        self.state = _State.IN_TOOL

    def _clean_params(self) -> dict[str, str]:
        return {k: _clean(v) for k, v in self.params.items()}

    def _flush_text(self, partial: bool) -> None:
        content = "\n".join(self.text_lines).strip("\n")
        self.text_lines = []
        if content.strip():
            self.blocks.append(TextBlock(content, partial=partial))

    def finish(self, final: bool) -> list[ContentBlock]:
        if self.state is _State.SCANNING:
            self._flush_text(partial=not final)
        else:
            params = self._clean_params()
            if self.state is _State.IN_PARAM:
                params[self.param_name] = _clean(self.param_value)
            self.blocks.append(ToolUse(self.tool_name, params, partial=True))
        return self.blocks


def parse_assistant_message(text: str, *, final: bool = True) -> list[ContentBlock]:
    """
    Parse assistant text into content blocks.

    Args:
        text: Everything the model has produced so far.
        final: Whether the stream has ended. Trailing text is only
               partial while more may arrive; an unclosed tool block is
               partial either way.
    """
    machine = _Machine()
    for line in text.split("\n"):
        machine.feed_line(line)
    return machine.finish(final)


class MessageParser:
    """
    Accumulates a token stream and reports blocks as they complete.

    Usage:
        parser = MessageParser()
        async for fragment in stream:
            for block in parser.feed(fragment):
                ...  # block is final
        for block in parser.finish():
            ...
    """

    def __init__(self) -> None:
        self.buffer = ""
        self.blocks: list[ContentBlock] = []
        self._reported = 0

    def feed(self, fragment: str) -> list[ContentBlock]:
        """Append a fragment; return blocks that became final because of it."""
        self.buffer += fragment
        self.blocks = parse_assistant_message(self.buffer, final=False)

        # An unterminated last line may still grow into a different tag,
        # so only complete lines can finalize a block mid-stream.
        cut = self.buffer.rfind("\n")
        if cut == -1:
            return []
        settled = parse_assistant_message(self.buffer[: cut + 1], final=False)
        return self._newly_final(settled)

    def finish(self) -> list[ContentBlock]:
        """Mark the stream ended; return the remaining final blocks."""
        self.blocks = parse_assistant_message(self.buffer, final=True)
        return self._newly_final(self.blocks)

    @property
    def partial_block(self) -> ContentBlock | None:
        if self.blocks and self.blocks[-1].partial:
            return self.blocks[-1]
        return None

    def _newly_final(self, blocks: list[ContentBlock]) -> list[ContentBlock]:
        final = [b for b in blocks if not b.partial]
        fresh = final[self._reported:]
        self._reported = len(final)
        return fresh
