"""Custom command implementations for flipagent.

These functions are the entry points called by the knack framework.
Each one maps to a registered command in commands.py.  Every
:class:`MCPError` is converted to a :class:`CLIError` here so the user
sees a single line and exit status 1.
"""

import json
import logging
from contextlib import contextmanager

from knack.util import CLIError

logger = logging.getLogger(__name__)


# ======================================================================
# Helpers
# ======================================================================

@contextmanager
def _mcp_errors():
    """Translate MCP failures into CLI errors."""
    from flipagent.mcp.errors import MCPError

    try:
        yield
    except MCPError as exc:
        raise CLIError(str(exc)) from exc


def _load_registry(config_file=None):
    from flipagent.mcp.loader import load_registry

    registry, path = load_registry(config_file)
    if path is None:
        logger.warning("No MCP config file found; no servers registered")
    return registry


@contextmanager
def _connected_registry(config_file=None):
    """Registry with auto-start servers connected; always disconnected on exit."""
    from flipagent.ui import console

    registry = _load_registry(config_file)
    try:
        with console.spinner("Connecting MCP servers"):
            results = registry.connect_all()
        failed = [name for name, ok in results.items() if not ok]
        for name in failed:
            console.print_warning(f"Could not connect MCP server '{name}'")
        with _mcp_errors():
            yield registry
    finally:
        registry.disconnect_all()


def _parse_json(value, option, expected):
    if value is None:
        return expected()
    try:
        parsed = json.loads(value)
    except ValueError as exc:
        raise CLIError(f"{option} must be valid JSON: {exc}") from exc
    if not isinstance(parsed, expected):
        raise CLIError(f"{option} must be a JSON {'object' if expected is dict else 'array'}.")
    return parsed


# ======================================================================
# Server role
# ======================================================================

def mcp_serve(config_file=None, skills_dir=None, no_upstream=False):
    """Run the inbound MCP server on stdio until end of input."""
    from flipagent.mcp.security import load_security_config
    from flipagent.mcp.server import MCPServer
    from flipagent.mcp.tools import CompositeToolProvider, RegistryToolProvider, SkillToolProvider

    providers = [SkillToolProvider(skills_dir)]
    registry = None
    if not no_upstream:
        registry = _load_registry(config_file)
        registry.connect_all()
        providers.append(RegistryToolProvider(registry))

    server = MCPServer(CompositeToolProvider(providers), load_security_config())
    try:
        server.serve()
    finally:
        if registry is not None:
            registry.disconnect_all()


# ======================================================================
# Client role
# ======================================================================

def mcp_status(config_file=None):
    """Connect auto-start servers and report per-server state."""
    from flipagent.ui import console

    with _connected_registry(config_file) as registry:
        health = registry.check_health()
        rows = []
        for name in registry.list_servers():
            client = registry.get_client(name)
            config = registry.get_config(name)
            rows.append({
                "name": name,
                "state": client.state.value if client else "not started",
                "autoStart": config.auto_start,
                "serverInfo": client.server_info.to_dict() if client and client.server_info else None,
                "healthy": health.get(name, False),
                "pid": client.pid if client else None,
            })
    if rows:
        console.print_server_table(rows)
    else:
        console.print_dim("No MCP servers configured.")
    return rows


def mcp_tools(config_file=None, server=None):
    with _connected_registry(config_file) as registry:
        if server and server not in registry:
            raise CLIError(f"Unknown MCP server: {server}")
        tools = registry.get_all_tools()
    return [t.to_dict() for t in tools if server is None or t.server == server]


def mcp_call(config_file=None, name=None, arguments=None):
    if not name:
        raise CLIError("--name is required.")
    params = _parse_json(arguments, "--arguments", dict)
    with _connected_registry(config_file) as registry:
        result = registry.call_tool(name, params)
    return result.to_dict()


def mcp_call_batch(config_file=None, name=None, arguments_list=None):
    if not name:
        raise CLIError("--name is required.")
    if arguments_list is None:
        raise CLIError("--arguments-list is required.")
    params_list = _parse_json(arguments_list, "--arguments-list", list)
    if not all(isinstance(p, dict) for p in params_list):
        raise CLIError("--arguments-list entries must be JSON objects.")
    with _connected_registry(config_file) as registry:
        results = registry.call_tool_batch(name, params_list)
    return [r.to_dict() for r in results]


def mcp_resources(config_file=None):
    with _connected_registry(config_file) as registry:
        return {
            "resources": [r.to_dict() for r in registry.get_all_resources()],
            "resourceTemplates": [t.to_dict() for t in registry.get_all_resource_templates()],
        }


def mcp_read(config_file=None, uri=None):
    if not uri:
        raise CLIError("--uri is required.")
    with _connected_registry(config_file) as registry:
        stream = registry.stream_resource(uri)
        return [chunk.to_dict() for chunk in stream]


def mcp_prompts(config_file=None):
    with _connected_registry(config_file) as registry:
        return [p.to_dict() for p in registry.get_all_prompts()]


def mcp_prompt(config_file=None, name=None, arguments=None):
    if not name:
        raise CLIError("--name is required.")
    args = _parse_json(arguments, "--arguments", dict) if arguments is not None else None
    if args is not None:
        args = {str(k): str(v) for k, v in args.items()}
    with _connected_registry(config_file) as registry:
        return registry.get_prompt_cached(name, args)


# ======================================================================
# Configuration and installation
# ======================================================================

def mcp_config_show(config_file=None):
    """Show the resolved config path and its server entries (no connections)."""
    from flipagent.config import load_mcp_config
    from flipagent.mcp.loader import parse_server_configs

    config, path = load_mcp_config(config_file)
    return {
        "path": str(path) if path else None,
        "servers": {c.name: c.to_dict() for c in parse_server_configs(config)},
    }


def mcp_install(config_file=None):
    from flipagent.mcp.installer import install_mcp_server
    from flipagent.ui import console

    result = install_mcp_server()
    for line in result["installed"]:
        console.print_success(f"Installed: {line}")
    for line in result["skipped"]:
        console.print_warning(f"Skipped: {line}")
    return result


def mcp_uninstall(config_file=None):
    from flipagent.mcp.installer import uninstall_mcp_server
    from flipagent.ui import console

    result = uninstall_mcp_server()
    for line in result["removed"]:
        console.print_success(f"Removed: {line}")
    for line in result["skipped"]:
        console.print_dim(f"Skipped: {line}")
    return result
