"""Populate a registry from the ``mcpServers`` configuration file.

The file is located by :func:`flipagent.config.load_mcp_config`; each
entry of its ``mcpServers`` map becomes one :class:`ServerConfig`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from flipagent.config import load_mcp_config
from flipagent.mcp.base import ServerConfig
from flipagent.mcp.registry import MCPRegistry

logger = logging.getLogger(__name__)


def parse_server_configs(config: dict[str, Any]) -> list[ServerConfig]:
    """Build ServerConfigs from a parsed config object.

    Entries that are not objects, or that fail to convert, are logged
    and skipped so one bad entry does not hide the rest.
    """
    servers = config.get("mcpServers") or {}
    if not isinstance(servers, dict):
        logger.warning("Ignoring mcpServers: expected an object, got %s", type(servers).__name__)
        return []

    configs: list[ServerConfig] = []
    for name, entry in servers.items():
        if not isinstance(entry, dict):
            logger.warning("Ignoring MCP server '%s': entry must be an object", name)
            continue
        try:
            configs.append(ServerConfig.from_dict(name, entry))
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring MCP server '%s': %s", name, exc)
    return configs


def initialize_from_config(registry: MCPRegistry, config: dict[str, Any]) -> list[str]:
    """Register every configured server.  Returns the registered names."""
    names = []
    for server_config in parse_server_configs(config):
        registry.register(server_config)
        names.append(server_config.name)
    if names:
        logger.info("Registered %d MCP server(s): %s", len(names), ", ".join(names))
    return names


def load_registry(
    config_path: str | None = None,
    registry: MCPRegistry | None = None,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> tuple[MCPRegistry, Path | None]:
    """Resolve the config file and return a populated registry.

    Returns the registry together with the file it was loaded from
    (None when no file was found).
    """
    registry = registry if registry is not None else MCPRegistry()
    config, path = load_mcp_config(config_path, cwd=cwd, home=home)
    initialize_from_config(registry, config)
    return registry, path
