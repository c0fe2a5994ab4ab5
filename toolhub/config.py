"""
Tool server configuration and its JSON settings file.

The settings file keeps every server under a single "mcpServers" key:

    {
      "mcpServers": {
        "echo": {
          "command": "python",
          "args": ["-m", "toolhub.servers.echo"],
          "env": {"LOG_LEVEL": "debug"},
          "disabled": false,
          "timeout": 30,
          "autoApprove": ["echo"]
        }
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from toolhub.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "mcp-settings.json"
CONFIG_ENV_VAR = "TOOLHUB_CONFIG"


class ToolServerConfig(BaseModel, frozen=True, populate_by_name=True, coerce_numbers_to_str=True):
    """How to launch one tool server. The name is the server's key in the file, not part of its entry."""

    name: str = Field(min_length=1, exclude=True)
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    timeout: float | None = Field(default=None, gt=0)
    auto_approve: list[str] = Field(default_factory=list, alias="autoApprove")

    @property
    def enabled(self) -> bool:
        return not self.disabled

    @classmethod
    def from_dict(cls, name: str, data: Any) -> ToolServerConfig:
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration for MCP server {name} must be an object")
        try:
            return cls.model_validate({**data, "name": name})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration for MCP server {name}: {_describe(e)}") from e

    def to_dict(self) -> dict[str, Any]:
        """The file entry: command and args always, other fields only when set."""
        data = self.model_dump(by_alias=True, exclude_defaults=True)
        data.setdefault("args", [])
        return data

    def process_env(self) -> dict[str, str]:
        """The ambient environment overlaid with this server's variables."""
        return {**os.environ, **self.env}


def _describe(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'entry'}: {e['msg']}"
        for e in error.errors()
    )


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


class ConfigStore:
    """Loads and saves tool server configurations as JSON."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else default_config_path()

    def load(self) -> dict[str, ToolServerConfig]:
        """Read all server configs. A missing file means no servers."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No MCP settings at {self.path}, starting with none")
            return {}
        except OSError as e:
            raise ConfigError(f"Failed to read {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{self.path}: expected a JSON object")
        servers = data.get("mcpServers") or {}
        if not isinstance(servers, dict):
            raise ConfigError(f"{self.path}: 'mcpServers' must be an object")

        return {
            name: ToolServerConfig.from_dict(name, entry)
            for name, entry in servers.items()
        }

    def save(self, configs: dict[str, ToolServerConfig]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"mcpServers": {name: c.to_dict() for name, c in configs.items()}}
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        logger.info(f"Saved {len(configs)} MCP server(s) to {self.path}")

    def add_server(self, config: ToolServerConfig) -> None:
        configs = self.load()
        configs[config.name] = config
        self.save(configs)

    def remove_server(self, name: str) -> None:
        configs = self.load()
        if configs.pop(name, None) is not None:
            self.save(configs)

    def update_server(self, name: str, **changes: Any) -> ToolServerConfig:
        """Replace fields of an existing server config (e.g. disabled=True)."""
        configs = self.load()
        if name not in configs:
            raise ConfigError(f"MCP server {name} not found in configuration")
        current = configs[name]
        unknown = set(changes) - set(type(current).model_fields)
        if unknown:
            raise ConfigError(f"Invalid update for MCP server {name}: unknown field(s) {sorted(unknown)}")
        try:
            updated = ToolServerConfig.model_validate({**current.model_dump(), "name": name, **changes})
        except ValidationError as e:
            raise ConfigError(f"Invalid update for MCP server {name}: {_describe(e)}") from e
        configs[name] = updated
        self.save(configs)
        return updated
