"""MCP error taxonomy.

Every failure surfaced by a Connection or the Registry is an
:class:`MCPError`.  The subclasses separate transport trouble, remote
JSON-RPC errors, local deadlines, lifecycle problems and lookup misses
so callers can tell them apart without parsing messages.
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base class for all MCP client/server errors."""


class MCPTransportError(MCPError):
    """Broken pipe, failed write, or similar stream-level failure."""


class MCPProtocolError(MCPError):
    """The remote side answered with a JSON-RPC ``error`` object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"MCP Error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class MCPTimeoutError(MCPError):
    """A request's local deadline expired before its response arrived."""

    def __init__(self, method: str, timeout_ms: int):
        super().__init__(f"MCP request '{method}' timed out after {timeout_ms}ms")
        self.method = method
        self.timeout_ms = timeout_ms


class MCPLifecycleError(MCPError):
    """The connection is not in a state that can serve the request."""


class NotConnectedError(MCPLifecycleError):
    pass


class ServerExitedError(MCPLifecycleError):
    def __init__(self, server: str, exit_code: int | None):
        super().__init__(f"MCP server '{server}' exited with code {exit_code}")
        self.server = server
        self.exit_code = exit_code


class ReconnectExhaustedError(MCPLifecycleError):
    def __init__(self, server: str, attempts: int):
        super().__init__(
            f"MCP server '{server}' is disconnected: reconnect attempts exhausted after {attempts} tries"
        )
        self.server = server
        self.attempts = attempts


class CapabilityNotFoundError(MCPError):
    """No connected server declares the requested capability."""

    kind = "Capability"

    def __init__(self, name: str):
        super().__init__(f"{self.kind} not found: {name}")
        self.name = name


class ToolNotFoundError(CapabilityNotFoundError):
    kind = "Tool"


class ResourceNotFoundError(CapabilityNotFoundError):
    kind = "Resource"


class PromptNotFoundError(CapabilityNotFoundError):
    kind = "Prompt"


class ToolTimeoutError(MCPError):
    """A locally executed tool (server role) exceeded its time budget."""

    def __init__(self, tool: str, timeout_ms: int):
        super().__init__(f"Tool execution timed out after {timeout_ms}ms")
        self.tool = tool
        self.timeout_ms = timeout_ms
