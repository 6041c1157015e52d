"""MCP server registry -- configuration, connections, aggregation, dispatch.

The registry owns the set of configured servers (in registration
order) and at most one :class:`Connection` per server name, created
lazily.  Listing operations aggregate across every READY connection
and tolerate individual failures; dispatch operations accept either a
qualified ``server:name`` or a bare name, in which case READY
connections are probed in registration order and the first server that
declares the capability wins.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, TypeVar

from flipagent.config import MCPSettings
from flipagent.mcp.base import Prompt, Resource, ResourceTemplate, ServerConfig, Tool, ToolResult
from flipagent.mcp.cache import PromptCache, prompt_cache_key
from flipagent.mcp.connection import Connection
from flipagent.mcp.errors import (
    MCPError,
    NotConnectedError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from flipagent.mcp.streaming import ResourceStream

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MCPRegistry:
    """Central registry of external MCP servers.

    ``connection_factory`` builds a Connection from a ServerConfig; tests
    substitute in-process fakes.
    """

    def __init__(
        self,
        settings: MCPSettings | None = None,
        connection_factory: Callable[..., Connection] | None = None,
    ):
        self.settings = settings or MCPSettings.from_env()
        self._connection_factory = connection_factory or Connection
        self._servers: dict[str, ServerConfig] = {}
        self._clients: dict[str, Connection] = {}
        self._lock = threading.RLock()
        self.prompt_cache = PromptCache(
            ttl_ms=self.settings.prompt_cache_ttl_ms,
            max_entries=self.settings.prompt_cache_max_entries,
        )

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def register(self, config: ServerConfig) -> None:
        """Add (or replace) a server configuration."""
        with self._lock:
            replaced = config.name in self._servers
            if replaced:
                self._drop_client(config.name)
            self._servers[config.name] = config
        logger.debug("MCP server %s: %s", "re-registered" if replaced else "registered", config.name)

    def unregister(self, name: str) -> None:
        """Disconnect any live connection and forget the server."""
        with self._lock:
            self._drop_client(name)
            self._servers.pop(name, None)

    def _drop_client(self, name: str) -> None:
        client = self._clients.pop(name, None)
        if client is not None:
            client.disconnect()

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    def get_config(self, name: str) -> ServerConfig | None:
        return self._servers.get(name)

    def get_client(self, name: str) -> Connection | None:
        """Existing connection for ``name`` (None if never created)."""
        return self._clients.get(name)

    def list_servers(self) -> list[str]:
        return list(self._servers)

    def __len__(self) -> int:
        return len(self._servers)

    def __contains__(self, name: str) -> bool:
        return name in self._servers

    def _get_or_create_client(self, name: str) -> Connection:
        with self._lock:
            config = self._servers.get(name)
            if config is None:
                raise NotConnectedError(f"Unknown MCP server: {name}")
            client = self._clients.get(name)
            if client is None:
                client = self._connection_factory(config, settings=self.settings)
                self._clients[name] = client
            return client

    def ready_clients(self) -> list[tuple[str, Connection]]:
        """READY connections in registration order."""
        with self._lock:
            pairs = [(name, self._clients.get(name)) for name in self._servers]
        return [(name, client) for name, client in pairs if client is not None and client.connected]

    def split_qualified(self, qualified_name: str) -> tuple[str | None, str]:
        """Split ``server:name``.

        The prefix only counts as a qualifier when it names a registered
        server, so bare names containing ``:`` (e.g. ``file:///x`` URIs)
        are treated as unqualified.
        """
        server, sep, rest = qualified_name.partition(":")
        if sep and server in self._servers:
            return server, rest
        return None, qualified_name

    def _require_connected(self, server: str) -> Connection:
        client = self._clients.get(server)
        if client is None or not client.connected:
            raise NotConnectedError(f"Server not connected: {server}")
        return client

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def connect(self, name: str) -> Connection:
        """Connect one server (lazily creating its Connection)."""
        client = self._get_or_create_client(name)
        client.connect()
        return client

    def connect_all(self) -> dict[str, bool]:
        """Concurrently connect every auto-start server.

        One server failing is logged and does not affect the others.
        Returns ``{name: connected}`` for every server attempted.
        """
        names = []
        for name, config in list(self._servers.items()):
            if not config.auto_start:
                continue
            if not config.command:
                logger.warning("Skipping MCP server '%s' without command", name)
                continue
            names.append(name)
        if not names:
            return {}

        def _connect(name: str) -> bool:
            try:
                self.connect(name)
                return True
            except Exception as exc:
                logger.error("Failed to connect MCP server '%s': %s", name, exc)
                return False

        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="mcp-connect") as pool:
            return dict(zip(names, pool.map(_connect, names)))

    def disconnect_all(self) -> None:
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for name, client in clients:
            try:
                client.disconnect()
            except Exception as exc:
                logger.warning("Error disconnecting MCP server '%s': %s", name, exc)

    def check_health(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        with self._lock:
            clients = list(self._clients.items())
        for name, client in clients:
            results[name] = client.connected and client.health()
        return results

    def __enter__(self) -> "MCPRegistry":
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect_all()

    # ------------------------------------------------------------------ #
    # Aggregation
    # ------------------------------------------------------------------ #

    def _aggregate(self, what: str, fetch: Callable[[Connection], Iterable[T]]) -> list[T]:
        items: list[T] = []
        for name, client in self.ready_clients():
            try:
                items.extend(item.with_server(name) for item in fetch(client))
            except MCPError as exc:
                logger.warning("Failed to list %s on MCP server '%s': %s", what, name, exc)
        return items

    def get_all_tools(self) -> list[Tool]:
        return self._aggregate("tools", lambda c: c.list_tools())

    def get_all_resources(self) -> list[Resource]:
        return self._aggregate("resources", lambda c: c.list_resources())

    def get_all_resource_templates(self) -> list[ResourceTemplate]:
        return self._aggregate("resource templates", lambda c: c.list_resource_templates())

    def get_all_prompts(self) -> list[Prompt]:
        return self._aggregate("prompts", lambda c: c.list_prompts())

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _find_tool_server(self, tool_name: str) -> Connection | None:
        for name, client in self.ready_clients():
            try:
                if any(t.name == tool_name for t in client.list_tools()):
                    return client
            except MCPError as exc:
                logger.debug("Tool lookup for '%s' failed on '%s': %s", tool_name, name, exc)
        return None

    def _resolve_tool(self, qualified_name: str) -> tuple[Connection, str]:
        server, tool_name = self.split_qualified(qualified_name)
        if server is not None:
            return self._require_connected(server), tool_name
        client = self._find_tool_server(tool_name)
        if client is None:
            raise ToolNotFoundError(qualified_name)
        return client, tool_name

    def call_tool(self, qualified_name: str, params: dict[str, Any] | None = None) -> ToolResult:
        client, tool_name = self._resolve_tool(qualified_name)
        return client.call_tool(tool_name, params or {})

    def call_tool_batch(self, qualified_name: str, params_list: list[dict[str, Any]]) -> list[ToolResult]:
        """Run calls sequentially, in order, on one resolved server.

        The first failure aborts the batch and propagates; results of
        calls that already completed are discarded.
        """
        client, tool_name = self._resolve_tool(qualified_name)
        return [client.call_tool(tool_name, params or {}) for params in params_list]

    def stream_resource(self, qualified_name: str) -> ResourceStream:
        server, uri = self.split_qualified(qualified_name)
        if server is not None:
            return self._require_connected(server).stream_resource(uri)

        for name, client in self.ready_clients():
            try:
                return client.stream_resource(uri)
            except MCPError as exc:
                logger.debug("Resource read for '%s' failed on '%s': %s", uri, name, exc)
        raise ResourceNotFoundError(qualified_name)

    def get_prompt_cached(
        self,
        qualified_name: str,
        arguments: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """``prompts/get`` with a TTL cache keyed by (server, name, args)."""
        server, prompt_name = self.split_qualified(qualified_name)
        self.prompt_cache.evict()

        key = prompt_cache_key(server, prompt_name, arguments)
        cached = self.prompt_cache.get(key)
        if cached is not None:
            return cached

        if server is not None:
            content = self._require_connected(server).get_prompt(prompt_name, arguments)
            self.prompt_cache.set(key, content)
            return content

        for name, client in self.ready_clients():
            try:
                content = client.get_prompt(prompt_name, arguments)
            except MCPError as exc:
                logger.debug("Prompt lookup for '%s' failed on '%s': %s", prompt_name, name, exc)
                continue
            self.prompt_cache.set(key, content)
            return content
        raise PromptNotFoundError(qualified_name)
