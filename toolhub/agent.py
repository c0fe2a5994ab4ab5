"""
Agent session — the loop that ties model output to tool execution.

    user message ──► chat model .astream() ──► MessageParser
                                                   │ final blocks
                          TextBlock ◄──────────────┤
                          ToolUse ──► ToolDispatcher ──► ToolServerManager
                                           │
    next user message ◄── tool result ◄────┘

Any LangChain chat model works; its streamed chunks are the token stream.
A tool fires as soon as its closing tag has streamed in, and its result
is folded back into the conversation as the next user message.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from toolhub.dispatcher import (
    ASK_FOLLOWUP_QUESTION,
    ATTEMPT_COMPLETION,
    ToolDispatcher,
    ToolResult,
)
from toolhub.local_tools import LocalTools
from toolhub.manager import ToolServerManager
from toolhub.parser import ContentBlock, MessageParser, TextBlock, ToolUse

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 20


class SessionObserver(Protocol):
    """Receives what happens during a session, e.g. to render it."""

    def text(self, content: str, partial: bool) -> None: ...

    def tool_use(self, block: ToolUse) -> None: ...

    def tool_result(self, block: ToolUse, result: ToolResult) -> None: ...

    def turn_completed(self, turn: "AssistantTurn") -> None: ...


class LoggingObserver:
    """Default observer: writes session activity to the log."""

    def text(self, content: str, partial: bool) -> None:
        if not partial:
            logger.info(f"Assistant: {content}")

    def tool_use(self, block: ToolUse) -> None:
        logger.info(f"Tool use: {block.name} {block.params}")

    def tool_result(self, block: ToolUse, result: ToolResult) -> None:
        logger.info(f"Tool result ({block.name}): {result.content[:500]}")

    def turn_completed(self, turn: "AssistantTurn") -> None:
        logger.debug(f"Turn completed with {len(turn.blocks)} block(s)")


@dataclass
class AssistantTurn:
    """One model response and the tools it triggered."""
    text: str
    blocks: list[ContentBlock] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def executed(self) -> ToolResult | None:
        return next((r for r in self.tool_results if r.executed), None)

    @property
    def completed(self) -> bool:
        """The model finished the task or handed control back to the user."""
        executed = self.executed
        return executed is not None and executed.tool_name in (
            ATTEMPT_COMPLETION,
            ASK_FOLLOWUP_QUESTION,
        )


def _chunk_text(content: str | list) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class AgentSession:
    """A conversation between one user, one chat model and the tools."""

    def __init__(
        self,
        model: BaseChatModel,
        manager: ToolServerManager,
        working_directory: str | Path = ".",
        dispatcher: ToolDispatcher | None = None,
        observer: SessionObserver | None = None,
    ):
        self.model = model
        self.manager = manager
        self.working_directory = Path(working_directory).resolve()
        self.dispatcher = dispatcher or ToolDispatcher(
            manager, LocalTools(self.working_directory)
        )
        self.observer = observer or LoggingObserver()
        self.history: list[BaseMessage] = []

    def clear_conversation(self) -> None:
        self.history = []

    async def process_message(self, content: str) -> AssistantTurn:
        """Send one user message and run the model's response to the end."""
        self.history.append(HumanMessage(content=content))
        messages = [SystemMessage(content=self.system_prompt()), *self.history]

        parser = MessageParser()
        turn = AssistantTurn(text="")
        self.dispatcher.begin_turn()

        async for chunk in self.model.astream(messages):
            fragment = _chunk_text(chunk.content)
            if not fragment:
                continue
            for block in parser.feed(fragment):
                await self._handle(block, turn)
            partial = parser.partial_block
            if isinstance(partial, TextBlock):
                self.observer.text(partial.content, True)

        for block in parser.finish():
            await self._handle(block, turn)

        turn.text = parser.buffer
        turn.blocks = parser.blocks
        self.history.append(AIMessage(content=parser.buffer))
        self.observer.turn_completed(turn)
        return turn

    async def run(self, task: str, max_turns: int = DEFAULT_MAX_TURNS) -> list[AssistantTurn]:
        """
        Work on a task until the model stops using tools, finishes, asks the
        user a question, or max_turns is reached.
        """
        turns = []
        message = task
        for _ in range(max_turns):
            turn = await self.process_message(message)
            turns.append(turn)
            if not turn.tool_results or turn.completed:
                break
            message = "\n\n".join(
                f"[{r.tool_name}] Result:\n{r.content}" for r in turn.tool_results
            )
        else:
            logger.warning(f"Stopped after {max_turns} turns")
        return turns

    async def _handle(self, block: ContentBlock, turn: AssistantTurn) -> None:
        if isinstance(block, TextBlock):
            self.observer.text(block.content, False)
            return
        self.observer.tool_use(block)
        result = await self.dispatcher.dispatch(block)
        turn.tool_results.append(result)
        self.observer.tool_result(block, result)

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(
            mcp_servers=self._mcp_servers_section(),
            working_directory=self.working_directory,
        )

    def _mcp_servers_section(self) -> str:
        capabilities = self.manager.get_all_tools_and_resources()
        if not (capabilities.tools or capabilities.resources or capabilities.resource_templates):
            return "(No MCP servers currently connected)"

        sections: dict[str, list[str]] = defaultdict(list)
        for server_name, tool in capabilities.tools:
            name, description = tool.get("name"), tool.get("description")
            lines = [f"- {name}: {description}" if description else f"- {name}"]
            if tool.get("inputSchema"):
                lines.append(f"    Input Schema: {tool['inputSchema']}")
            sections[server_name].extend(lines)
        for server_name, resource in capabilities.resources:
            sections[server_name].append(
                f"- Resource {resource.get('uri')} ({resource.get('name', '')})"
            )
        for server_name, template in capabilities.resource_templates:
            sections[server_name].append(
                f"- Resource template {template.get('uriTemplate')} ({template.get('name', '')})"
            )

        return "\n\n".join(
            f"## {server_name}\n\n" + "\n".join(lines)
            for server_name, lines in sections.items()
        )


SYSTEM_PROMPT = """You are a highly skilled software engineer with extensive knowledge in many programming languages, frameworks, design patterns, and best practices.

You have access to a set of tools. You can use one tool per message, and will receive the result of that tool use in the user's response. Use tools step-by-step to accomplish a given task, with each tool use informed by the result of the previous tool use.

# Tool Use Formatting

Tool use is formatted using XML-style tags. The tool name is enclosed in opening and closing tags on their own lines, and each parameter is enclosed within its own set of tags:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
</tool_name>

# Tools

## execute_command
Execute a CLI command in the working directory.
Parameters:
- command: (required) The CLI command to execute.

## read_file
Read the contents of a file.
Parameters:
- path: (required) The path of the file to read.

## write_to_file
Write content to a file, creating directories as needed.
Parameters:
- path: (required) The path of the file to write to.
- content: (required) The complete content to write.

## replace_in_file
Edit a file with SEARCH/REPLACE blocks:
<<<<<<< SEARCH
exact content to find
=======
new content
>>>>>>> REPLACE
Parameters:
- path: (required) The path of the file to modify.
- diff: (required) One or more SEARCH/REPLACE blocks.

## search_files
Regex search across the files in a directory.
Parameters:
- path: (required) The directory to search in.
- regex: (required) The regular expression to search for.
- file_pattern: (optional) Glob pattern to filter file names, e.g. *.py.

## list_files
List files and directories.
Parameters:
- path: (required) The directory to list.
- recursive: (optional) true to list recursively.

## use_mcp_tool
Use a tool provided by a connected MCP server.
Parameters:
- server_name: (required) The name of the MCP server providing the tool.
- tool_name: (required) The name of the tool to execute.
- arguments: (required) A JSON object with the tool's input parameters, following its input schema.

## access_mcp_resource
Access a resource provided by a connected MCP server.
Parameters:
- server_name: (required) The name of the MCP server providing the resource.
- uri: (required) The URI of the resource.

## ask_followup_question
Ask the user a question to gather information needed to complete the task.
Parameters:
- question: (required) The question to ask.
- options: (optional) A JSON array of 2-5 answer options.

## attempt_completion
Present the result of your work to the user.
Parameters:
- result: (required) The result of the task.
- command: (optional) A CLI command that demonstrates the result.

# Connected MCP Servers

{mcp_servers}

Your current working directory is: {working_directory}"""
