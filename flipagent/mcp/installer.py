"""Register (or remove) FlipAgent as an MCP server in desktop clients.

Two client configs are edited: Claude Desktop (platform specific path)
and Claude Code (``~/.claude.json``).  Each gets an ``mcpServers``
entry named ``flipagent`` that launches ``python -m flipagent mcp serve``.
An existing file is copied to ``<file>.backup`` before it is rewritten.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

SERVER_ENTRY_NAME = "flipagent"


def claude_desktop_config_path(
    home: Path | None = None,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path:
    home = home or Path.home()
    platform = platform or sys.platform
    env = os.environ if environ is None else environ
    if platform == "darwin":
        return home / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if platform == "win32":
        appdata = env.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / "Claude" / "claude_desktop_config.json"
    return home / ".config" / "claude" / "claude_desktop_config.json"


def claude_code_config_path(home: Path | None = None) -> Path:
    return (home or Path.home()) / ".claude.json"


def server_entry(python: str | None = None) -> dict[str, Any]:
    return {"command": python or sys.executable, "args": ["-m", "flipagent", "mcp", "serve"]}


def _targets(home: Path | None, platform: str | None, environ: Mapping[str, str] | None) -> list[tuple[str, Path]]:
    return [
        ("Claude Desktop", claude_desktop_config_path(home, platform, environ)),
        ("Claude Code", claude_code_config_path(home)),
    ]


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("top-level JSON value must be an object")
    return data


def _backup_and_write(path: Path, data: dict[str, Any]) -> None:
    if path.exists():
        shutil.copyfile(path, path.with_name(path.name + ".backup"))
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")


def install_mcp_server(
    home: Path | None = None,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
    python: str | None = None,
) -> dict[str, list[str]]:
    """Add the ``flipagent`` entry to every client config.

    Returns ``{"installed": [...], "skipped": [...]}``.  A config that
    cannot be read or written is skipped, never overwritten blindly.
    """
    installed: list[str] = []
    skipped: list[str] = []
    entry = server_entry(python)

    for client, path in _targets(home, platform, environ):
        try:
            config = _read_json(path)
            servers = config.get("mcpServers")
            if not isinstance(servers, dict):
                servers = config["mcpServers"] = {}
            servers[SERVER_ENTRY_NAME] = entry
            _backup_and_write(path, config)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping %s config %s: %s", client, path, exc)
            skipped.append(f"{client}: {exc}")
            continue
        logger.info("Installed FlipAgent MCP server in %s config %s", client, path)
        installed.append(f"{client}: {path}")

    return {"installed": installed, "skipped": skipped}


def uninstall_mcp_server(
    home: Path | None = None,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, list[str]]:
    """Remove the ``flipagent`` entry.  Returns ``{"removed", "skipped"}``."""
    removed: list[str] = []
    skipped: list[str] = []

    for client, path in _targets(home, platform, environ):
        if not path.exists():
            skipped.append(f"{client}: config not found")
            continue
        try:
            config = _read_json(path)
            servers = config.get("mcpServers")
            if not isinstance(servers, dict) or SERVER_ENTRY_NAME not in servers:
                skipped.append(f"{client}: flipagent not configured")
                continue
            del servers[SERVER_ENTRY_NAME]
            _backup_and_write(path, config)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping %s config %s: %s", client, path, exc)
            skipped.append(f"{client}: {exc}")
            continue
        removed.append(f"{client}: {path}")

    return {"removed": removed, "skipped": skipped}
