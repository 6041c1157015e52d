"""Process-wide MCP settings and configuration file discovery."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from knack.util import CLIError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLIPAGENT_MCP_"

# Resource chunks never go below this many bytes regardless of env overrides.
MIN_RESOURCE_CHUNK_BYTES = 1024

MCP_CONFIG_FILENAMES = (".mcp.json", "mcp.json")


@dataclass(frozen=True)
class MCPSettings:
    """Environment-tunable parameters shared by client and server roles."""

    resource_chunk_bytes: int = 64 * 1024
    request_timeout_ms: int = 15000
    prompt_cache_ttl_ms: int = 5 * 60 * 1000
    prompt_cache_max_entries: int = 500
    tool_timeout_ms: int = 30000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MCPSettings":
        """Read ``FLIPAGENT_MCP_*`` variables, falling back to defaults.

        Invalid values are logged and ignored rather than raised: a typo
        in an environment variable should not stop the process.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        chunk = _positive_int(env, "RESOURCE_CHUNK_BYTES", defaults.resource_chunk_bytes)
        return cls(
            resource_chunk_bytes=max(MIN_RESOURCE_CHUNK_BYTES, chunk),
            request_timeout_ms=_positive_int(env, "REQUEST_TIMEOUT_MS", defaults.request_timeout_ms),
            prompt_cache_ttl_ms=_positive_int(env, "PROMPT_CACHE_TTL_MS", defaults.prompt_cache_ttl_ms),
            prompt_cache_max_entries=_positive_int(env, "PROMPT_CACHE_MAX", defaults.prompt_cache_max_entries),
            tool_timeout_ms=_positive_int(env, "TOOL_TIMEOUT_MS", defaults.tool_timeout_ms),
        )


def _positive_int(env: Mapping[str, str], suffix: str, default: int) -> int:
    key = ENV_PREFIX + suffix
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", key, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", key, raw)
        return default
    return value


# --- MCP client configuration file ---


def candidate_config_paths(cwd: str | Path | None = None, home: str | Path | None = None) -> list[Path]:
    """Ordered list of locations probed for the ``mcpServers`` file."""
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    home = Path(home) if home is not None else Path.home()
    return [
        *(cwd / name for name in MCP_CONFIG_FILENAMES),
        home / ".config" / "flipagent" / "mcp.json",
        home / ".claude" / "mcp.json",
    ]


def resolve_config_path(
    config_path: str | None = None,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> Path | None:
    """Return the explicit path, or the first existing candidate."""
    if config_path:
        return Path(config_path)
    for path in candidate_config_paths(cwd, home):
        if path.is_file():
            return path
    return None


def load_mcp_config(
    config_path: str | None = None,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Load the client configuration file.

    With an explicit ``config_path`` a missing or unparseable file is a
    :class:`CLIError`.  When probing, unreadable candidates are logged
    and skipped.  Returns ``({}, None)`` when nothing is found.
    """
    if config_path:
        path = Path(config_path)
        if not path.is_file():
            raise CLIError(f"MCP config file not found: {config_path}")
        try:
            return _read_json_object(path), path
        except ValueError as exc:
            raise CLIError(f"Invalid MCP config file {config_path}: {exc}") from exc

    for path in candidate_config_paths(cwd, home):
        if not path.is_file():
            continue
        try:
            data = _read_json_object(path)
        except ValueError as exc:
            logger.warning("Failed to parse MCP config %s: %s", path, exc)
            continue
        logger.info("Loaded MCP config from %s", path)
        return data, path

    logger.debug("No MCP config file found")
    return {}, None


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as exc:
        raise ValueError(str(exc)) from exc
    if not isinstance(data, dict):
        raise ValueError("top-level JSON value must be an object")
    return data
