"""MCP data model.

Defines the dataclasses passed between the wire layer, connections,
the registry and the inbound server: server configuration, descriptors
for tools/resources/templates/prompts, resource contents (whole or
chunked), tool results and the identity exchanged during ``initialize``.

Python attributes are snake_case; ``from_dict``/``to_dict`` translate
to and from the camelCase field names used on the wire.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from flipagent import __version__
from flipagent.mcp.protocol import PROTOCOL_VERSION

DEFAULT_MAX_RETRIES = 5
DEFAULT_RECONNECT_BASE_MS = 1000
DEFAULT_RECONNECT_MAX_MS = 30000


# -------------------------------------------------------------------- #
# Identity and configuration
# -------------------------------------------------------------------- #


@dataclass(frozen=True)
class MCPClientInfo:
    """Identity sent during the ``initialize`` handshake (and answered
    by the inbound server).

    Centralises the program name and version so connections and the
    server never hard-code them.
    """

    name: str = "flipagent"
    version: str = __version__

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True)
class ServerConfig:
    """Static description of one external tool provider.

    Immutable once registered.  ``request_timeout_ms`` of None means
    "use the process-wide default" from :class:`flipagent.config.MCPSettings`.
    """

    name: str
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    transport: str = "stdio"
    auto_start: bool = True
    retry_on_failure: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    restart_on_exit: bool = False
    request_timeout_ms: int | None = None
    reconnect_base_ms: int = DEFAULT_RECONNECT_BASE_MS
    reconnect_max_ms: int = DEFAULT_RECONNECT_MAX_MS

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ServerConfig":
        """Build from one ``mcpServers`` entry of the config file."""

        def _opt(key: str, default: Any) -> Any:
            value = data.get(key)
            return default if value is None else value

        def _list(key: str) -> list[Any]:
            value = data.get(key)
            if value is None:
                return []
            if not isinstance(value, list):
                raise ValueError(f"'{key}' must be a list, got {type(value).__name__}")
            return value

        timeout = data.get("requestTimeoutMs")

        return cls(
            name=name,
            command=data.get("command"),
            args=tuple(str(a) for a in _list("args")),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            transport=_opt("transport", "stdio"),
            auto_start=bool(_opt("autoStart", True)),
            retry_on_failure=bool(_opt("retryOnFailure", False)),
            max_retries=int(_opt("maxRetries", DEFAULT_MAX_RETRIES)),
            restart_on_exit=bool(_opt("restartOnExit", False)),
            request_timeout_ms=None if timeout is None else int(timeout),
            reconnect_base_ms=int(_opt("reconnectBaseMs", DEFAULT_RECONNECT_BASE_MS)),
            reconnect_max_ms=int(_opt("reconnectMaxMs", DEFAULT_RECONNECT_MAX_MS)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "cwd": self.cwd,
            "transport": self.transport,
            "autoStart": self.auto_start,
            "retryOnFailure": self.retry_on_failure,
            "maxRetries": self.max_retries,
            "restartOnExit": self.restart_on_exit,
            "requestTimeoutMs": self.request_timeout_ms,
            "reconnectBaseMs": self.reconnect_base_ms,
            "reconnectMaxMs": self.reconnect_max_ms,
        }


@dataclass(frozen=True)
class ServerInfo:
    """Identity and capabilities a server declared during ``initialize``."""

    name: str
    version: str = ""
    protocol_version: str = PROTOCOL_VERSION
    capabilities: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_initialize(cls, result: dict[str, Any]) -> "ServerInfo":
        info = result.get("serverInfo") or {}
        return cls(
            name=str(info.get("name", "")),
            version=str(info.get("version", "")),
            protocol_version=str(result.get("protocolVersion") or PROTOCOL_VERSION),
            capabilities=dict(result.get("capabilities") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "protocolVersion": self.protocol_version,
            "capabilities": dict(self.capabilities),
        }


# -------------------------------------------------------------------- #
# Capability descriptors
# -------------------------------------------------------------------- #


@dataclass(frozen=True)
class Tool:
    """A callable capability.  ``server`` is set when aggregated."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    server: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tool":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema or {"type": "object", "properties": {}},
        }
        if self.server is not None:
            result["server"] = self.server
        return result

    def with_server(self, server: str) -> "Tool":
        return dataclasses.replace(self, server=server)


@dataclass(frozen=True)
class Resource:
    uri: str
    name: str = ""
    description: str = ""
    mime_type: str | None = None
    server: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resource":
        return cls(
            uri=data["uri"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            mime_type=data.get("mimeType"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
            "server": self.server,
        })

    def with_server(self, server: str) -> "Resource":
        return dataclasses.replace(self, server=server)


@dataclass(frozen=True)
class ResourceTemplate:
    uri_template: str
    name: str = ""
    description: str = ""
    mime_type: str | None = None
    server: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceTemplate":
        return cls(
            uri_template=data["uriTemplate"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            mime_type=data.get("mimeType"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "uriTemplate": self.uri_template,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
            "server": self.server,
        })

    def with_server(self, server: str) -> "ResourceTemplate":
        return dataclasses.replace(self, server=server)


@dataclass(frozen=True)
class Prompt:
    name: str
    description: str = ""
    arguments: tuple[dict[str, Any], ...] = ()
    server: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Prompt":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            arguments=tuple(data.get("arguments") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "description": self.description,
            "arguments": [dict(a) for a in self.arguments],
            "server": self.server,
        })

    def with_server(self, server: str) -> "Prompt":
        return dataclasses.replace(self, server=server)


# -------------------------------------------------------------------- #
# Payloads
# -------------------------------------------------------------------- #


@dataclass(frozen=True)
class ResourceContent:
    """Resource payload: either complete (``text``/``blob``) or a chunk.

    Chunk records carry ``chunk`` plus ``complete``; only the final chunk
    of a sequence has ``complete=True``.
    """

    uri: str
    mime_type: str | None = None
    text: str | None = None
    blob: str | None = None
    chunk: str | None = None
    complete: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceContent":
        complete = data.get("complete")
        return cls(
            uri=data.get("uri", ""),
            mime_type=data.get("mimeType"),
            text=data.get("text"),
            blob=data.get("blob"),
            chunk=data.get("chunk"),
            complete=complete if isinstance(complete, bool) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "uri": self.uri,
            "mimeType": self.mime_type,
            "text": self.text,
            "blob": self.blob,
            "chunk": self.chunk,
            "complete": self.complete,
        })

    @property
    def is_chunked(self) -> bool:
        return self.chunk is not None or self.complete is not None

    @property
    def payload(self) -> str | None:
        """The carried data: chunk, text, or blob (in that order)."""
        if self.chunk is not None:
            return self.chunk
        return self.text if self.text is not None else self.blob


@dataclass(frozen=True)
class ToolResult:
    """Result of a ``tools/call``: MCP content parts plus error flag."""

    content: tuple[dict[str, Any], ...] = ()
    is_error: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            content=tuple(data.get("content") or ()),
            is_error=bool(data.get("isError", False)),
        )

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolResult":
        return cls(content=({"type": "text", "text": text},), is_error=is_error)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"content": [dict(c) for c in self.content]}
        if self.is_error:
            result["isError"] = True
        return result

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        return "\n".join(p.get("text", "") for p in self.content if p.get("type") == "text")


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}
