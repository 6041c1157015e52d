"""Shared test fixtures for flipagent tests."""

import shlex
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from flipagent.config import MCPSettings
from flipagent.mcp.base import Prompt, Resource, ServerConfig, Tool, ToolResult
from flipagent.mcp.security import SecurityConfig

FAKE_SERVER = str(Path(__file__).with_name("fake_mcp_server.py"))


# ------------------------------------------------------------------
# Global: isolate tests from the developer's environment
# ------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_mcp_env(monkeypatch):
    """Drop FLIPAGENT_MCP_* variables so defaults apply in every test."""
    import os

    for key in list(os.environ):
        if key.startswith("FLIPAGENT_MCP_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings():
    """Short request timeout so a hung test fails fast."""
    return MCPSettings(request_timeout_ms=5000)


@pytest.fixture
def fake_server_config():
    """Factory for a ServerConfig launching tests/fake_mcp_server.py."""

    def _make(name="fake", *flags, **overrides):
        return ServerConfig(
            name=name,
            command=shlex.quote(sys.executable),
            args=(FAKE_SERVER, "--name", name, *flags),
            **overrides,
        )

    return _make


@pytest.fixture
def security():
    """Permissive security config with audit disabled."""
    return SecurityConfig(audit_enabled=False)


# ------------------------------------------------------------------
# In-process connection doubles
# ------------------------------------------------------------------

def make_fake_connection(name, tools=(), resources=(), prompts=(), connected=True):
    """MagicMock standing in for a Connection with canned listings."""
    conn = MagicMock(name=f"Connection({name})")
    conn.name = name
    conn.connected = connected
    conn.list_tools.return_value = [Tool(name=t) for t in tools]
    conn.list_resources.return_value = [Resource(uri=u) for u in resources]
    conn.list_resource_templates.return_value = []
    conn.list_prompts.return_value = [Prompt(name=p) for p in prompts]
    conn.call_tool.side_effect = lambda tool, args: ToolResult.from_text(f"{name}:{tool}")
    conn.health.return_value = connected
    return conn


@pytest.fixture
def connection_factory():
    """Connection factory returning pre-registered fakes by server name.

    Usage::

        connection_factory.fakes["a"] = make_fake_connection("a", tools=["x"])
        registry = MCPRegistry(settings, connection_factory=connection_factory)
    """

    class _Factory:
        def __init__(self):
            self.fakes = {}
            self.created = []

        def __call__(self, config, settings=None):
            self.created.append(config.name)
            return self.fakes.setdefault(config.name, make_fake_connection(config.name))

    return _Factory()
