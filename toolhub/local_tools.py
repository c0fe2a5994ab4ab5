"""
Local tools the agent can run without a tool server.

Each handler returns a result string for the model, or raises with a
descriptive message; the dispatcher turns errors into result text.
Paths are resolved against the session's working directory.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import os
import re
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

AskUser = Callable[[str, list[str]], Awaitable[str]]

_DIFF_BLOCK = re.compile(
    r"<<<<<<< SEARCH\n(.*?)=======\n(.*?)>>>>>>> REPLACE", re.DOTALL
)
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}
COMMAND_TIMEOUT = 300.0


class LocalTools:
    """File, search, command and user-interaction tools."""

    def __init__(
        self,
        working_directory: str | Path,
        ask_user: AskUser | None = None,
        command_timeout: float = COMMAND_TIMEOUT,
    ):
        self.working_directory = Path(working_directory).resolve()
        self.ask_user = ask_user
        self.command_timeout = command_timeout

    def resolve(self, path: str) -> Path:
        if not path:
            raise ValueError("Missing required parameter 'path'")
        return (self.working_directory / path).resolve()

    async def read_file(self, path: str) -> str:
        content = self.resolve(path).read_text(encoding="utf-8")
        return f"Content of {path}:\n\n{content}"

    async def write_to_file(self, path: str, content: str) -> str:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"File successfully written to {path}"

    async def replace_in_file(self, path: str, diff: str) -> str:
        target = self.resolve(path)
        content = target.read_text(encoding="utf-8")
        blocks = _DIFF_BLOCK.findall(diff)
        if not blocks:
            raise ValueError("No SEARCH/REPLACE blocks found in diff")

        for search, replacement in blocks:
            if search not in content:
                raise ValueError(f"SEARCH block not found in {path}:\n{search}")
            content = content.replace(search, replacement, 1)

        target.write_text(content, encoding="utf-8")
        return f"File {path} successfully updated"

    async def list_files(self, path: str, recursive: bool = False) -> str:
        entries = self._list(self.resolve(path), recursive)
        suffix = " (recursive)" if recursive else ""
        listing = "\n".join(entries) if entries else "(empty)"
        return f"Files in {path}{suffix}:\n\n{listing}"

    async def search_files(self, path: str, regex: str, file_pattern: str | None = None) -> str:
        root = self.resolve(path)
        try:
            pattern = re.compile(regex)
        except re.error as e:
            raise ValueError(f"Invalid regex {regex!r}: {e}") from e

        results = []
        for entry in self._list(root, recursive=True):
            if entry.endswith("/"):
                continue
            if file_pattern and not fnmatch.fnmatch(Path(entry).name, file_pattern):
                continue
            try:
                lines = (self.working_directory / entry).read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping {entry}: {e}")
                continue
            for i, line in enumerate(lines):
                if pattern.search(line):
                    context = "\n".join(lines[max(0, i - 2): i + 3])
                    results.append(f"File: {entry}\nLine {i + 1}: {line}\nContext:\n{context}\n")

        if not results:
            return f"No matches found for pattern {regex} in {path}"
        return f"Search results for pattern {regex} in {path}:\n\n" + "\n".join(results)

    async def execute_command(self, command: str) -> str:
        if not command:
            raise ValueError("Missing required parameter 'command'")
        logger.info(f"Executing: {command}")
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self.working_directory,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.command_timeout:g}s: {command}")
        text = output.decode(errors="replace")
        return f"Command executed with exit code: {process.returncode}\n\nOutput:\n{text}"

    async def ask_followup_question(self, question: str, options: str | None = None) -> str:
        choices = _parse_options(options)
        if self.ask_user is None:
            return f"Question for the user: {question}"
        answer = await self.ask_user(question, choices)
        return f"<answer>\n{answer}\n</answer>"

    async def attempt_completion(self, result: str, command: str | None = None) -> str:
        if command:
            demo = await self.execute_command(command)
            return f"{result}\n\n{demo}"
        return result

    def _list(self, directory: Path, recursive: bool) -> list[str]:
        if not directory.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory}")
        entries = []
        for child in sorted(directory.iterdir()):
            relative = Path(os.path.relpath(child, self.working_directory)).as_posix()
            if child.is_dir():
                if recursive:
                    if child.name not in _SKIP_DIRS:
                        entries.extend(self._list(child, recursive))
                else:
                    entries.append(relative + "/")
            else:
                entries.append(relative)
        return entries


def _parse_options(options: str | None) -> list[str]:
    """Options arrive as a JSON array, e.g. ["Yes", "No"]."""
    if not options:
        return []
    try:
        parsed = json.loads(options)
    except json.JSONDecodeError:
        return [options.strip()]
    if isinstance(parsed, list):
        return [str(o) for o in parsed]
    return [str(parsed)]
