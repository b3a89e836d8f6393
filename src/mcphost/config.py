"""Registry settings and `.mcp.json` server configuration files."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILENAME = ".mcp.json"
GLOBAL_CONFIG_DIR = ".mcphost"


class ConfigError(ValueError):
    """Raised when a configuration file exists but cannot be used."""


class ServerConfig(BaseModel):
    """How to launch one MCP server; reused verbatim on reconnect."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1)
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)


class RegistrySettings(BaseModel):
    """Limits and timeouts applied by `MCPRegistry`."""

    tool_cap: int = Field(default=64, ge=0)
    server_cap: int = Field(default=16, ge=0)
    reserved_tool_names: frozenset[str] = frozenset()
    close_timeout_seconds: float = Field(default=5.0, gt=0)
    max_line_bytes: int = Field(default=16 * 1024 * 1024, gt=0)


@dataclass(slots=True, frozen=True)
class ConfiguredServer:
    """One named entry from a `.mcp.json` file."""

    name: str
    config: ServerConfig


class _ConfigFile(BaseModel):
    mcp_servers: dict[str, ServerConfig] = Field(default_factory=dict, alias="mcpServers")


def parse_mcp_config(path: Path) -> list[ConfiguredServer]:
    """Parse one `.mcp.json`; a missing file yields no servers."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        msg = f"failed to read {path}: {exc}"
        raise ConfigError(msg) from exc

    try:
        parsed = _ConfigFile.model_validate_json(content)
    except ValidationError as exc:
        msg = f"failed to parse {path}: {exc.errors()[0]['msg']}"
        raise ConfigError(msg) from exc
    return [ConfiguredServer(name=name, config=cfg) for name, cfg in parsed.mcp_servers.items()]


def load_mcp_configs(
    workspace_dir: Path | None,
    *,
    home_dir: Path | None = None,
) -> list[ConfiguredServer]:
    """Load the workspace config if present, else the global one under `home_dir`."""
    if workspace_dir is not None:
        workspace_config = workspace_dir / CONFIG_FILENAME
        if workspace_config.exists():
            return parse_mcp_config(workspace_config)

    home = home_dir if home_dir is not None else Path.home()
    global_config = home / GLOBAL_CONFIG_DIR / CONFIG_FILENAME
    if global_config.exists():
        return parse_mcp_config(global_config)
    return []


def save_mcp_config(path: Path, servers: Iterable[ConfiguredServer]) -> None:
    """Write servers to `path` atomically (temp file, then rename)."""
    payload = {
        "mcpServers": {
            server.name: {
                "command": server.config.command,
                "args": list(server.config.args),
                "env": dict(server.config.env),
            }
            for server in servers
        }
    }
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp_path, path)
