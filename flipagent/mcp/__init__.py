"""MCP (Model Context Protocol) client registry and stdio server.

Drives external MCP servers as subprocesses speaking newline-delimited
JSON-RPC 2.0, and serves FlipAgent's own tools to an external
controller over the same framing.

Public API:
    ServerConfig        -- Static description of one external server
    Connection          -- One server process and its protocol state
    ConnectionState     -- Connection lifecycle states
    MCPRegistry         -- Servers, aggregation and qualified dispatch
    MCPServer           -- Inbound server for the reciprocal role
    Tool, Resource, ResourceTemplate, Prompt, ResourceContent, ToolResult
    MCPError            -- Base of the error taxonomy
"""

from flipagent.mcp.base import (
    MCPClientInfo,
    Prompt,
    Resource,
    ResourceContent,
    ResourceTemplate,
    ServerConfig,
    ServerInfo,
    Tool,
    ToolResult,
)
from flipagent.mcp.connection import Connection, ConnectionState
from flipagent.mcp.errors import MCPError
from flipagent.mcp.registry import MCPRegistry
from flipagent.mcp.server import MCPServer

__all__ = [
    "Connection",
    "ConnectionState",
    "MCPClientInfo",
    "MCPError",
    "MCPRegistry",
    "MCPServer",
    "Prompt",
    "Resource",
    "ResourceContent",
    "ResourceTemplate",
    "ServerConfig",
    "ServerInfo",
    "Tool",
    "ToolResult",
]
