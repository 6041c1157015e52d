"""Inbound MCP server -- expose local tools to a controller over stdio.

Reads one JSON-RPC frame per line from standard input and writes
responses to standard output.  Nothing else is ever written to
standard output; diagnostics and audit records go to standard error.

``tools/call`` runs a five-stage pipeline, each stage short-circuiting
with its own error code::

    allow-list (-32600) -> rate limit (-32000) -> injection screen (-32602)
        -> execution with timeout -> audit

Every attempt is audit-logged, including rejected ones (duration 0).
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import IO, Any

from flipagent.config import MCPSettings
from flipagent.mcp import protocol
from flipagent.mcp.base import MCPClientInfo, ToolResult
from flipagent.mcp.codec import encode
from flipagent.mcp.errors import CapabilityNotFoundError, ToolTimeoutError
from flipagent.mcp.schema import validate_schema
from flipagent.mcp.security import (
    AuditRecord,
    SecurityConfig,
    check_rate_limit,
    filter_tools,
    is_tool_allowed,
    load_security_config,
    log_audit,
    sanitize_tool_args,
)
from flipagent.mcp.tools import ToolProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
DEFAULT_MAX_TOOL_WORKERS = 16


class MCPServer:
    """Request handler plus stdio loop for the reciprocal server role.

    ``handle_line`` and ``handle_request`` are pure request -> response
    functions (None for notifications) and can be driven directly;
    ``serve`` wires them to a byte stream with a worker pool.
    """

    def __init__(
        self,
        tool_provider: ToolProvider,
        security_config: SecurityConfig | None = None,
        *,
        settings: MCPSettings | None = None,
        client_id: str = "stdio",
        stdout: IO[bytes] | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_tool_workers: int = DEFAULT_MAX_TOOL_WORKERS,
        server_info: MCPClientInfo | None = None,
    ):
        self.tool_provider = tool_provider
        self.security = security_config or load_security_config()
        self.settings = settings or MCPSettings.from_env()
        self.client_id = client_id
        self.server_info = server_info or MCPClientInfo()
        self._stdout = stdout
        self._max_workers = max_workers
        self._write_lock = threading.Lock()
        self._max_tool_workers = max_tool_workers
        self._tool_lock = threading.Lock()
        self._tools_running = 0
        self._tool_pool = ThreadPoolExecutor(max_workers=max_tool_workers, thread_name_prefix="mcp-tool")

    # ------------------------------------------------------------------ #
    # Framing
    # ------------------------------------------------------------------ #

    def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Decode one input line and return the response frame, if any."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        text = line.strip()
        if not text:
            return None

        try:
            message = json.loads(text)
        except ValueError:
            return protocol.make_error(None, protocol.PARSE_ERROR, "Parse error")

        if (
            not isinstance(message, dict)
            or message.get("jsonrpc") != protocol.JSONRPC_VERSION
            or not isinstance(message.get("method"), str)
            or ("id" in message and not protocol.is_valid_id(message["id"]))
        ):
            request_id = message.get("id") if isinstance(message, dict) else None
            return protocol.make_error(
                request_id if protocol.is_valid_id(request_id) else None,
                protocol.INVALID_REQUEST,
                'Invalid Request: missing jsonrpc "2.0" or method',
            )
        return self.handle_request(message)

    def handle_request(self, message: dict[str, Any]) -> dict[str, Any] | None:
        method = message["method"]
        request_id = message.get("id")
        notification = protocol.is_notification(message)

        if method == protocol.METHOD_INITIALIZED:
            logger.debug("Controller sent initialized")
            return None
        if notification:
            logger.debug("Ignoring notification %s", method)
            return None

        try:
            if method == protocol.METHOD_INITIALIZE:
                return protocol.make_result(request_id, self._initialize())
            if method == protocol.METHOD_PING:
                return protocol.make_result(request_id, {})
            if method == protocol.METHOD_TOOLS_LIST:
                return protocol.make_result(request_id, self._list_tools())
            if method == protocol.METHOD_TOOLS_CALL:
                return self._call_tool(request_id, message.get("params"))
        except Exception as exc:
            logger.exception("Error handling %s", method)
            return protocol.make_error(request_id, protocol.INTERNAL_ERROR, str(exc) or "Internal error")
        return protocol.make_error(request_id, protocol.METHOD_NOT_FOUND, f"Method not found: {method}")

    # ------------------------------------------------------------------ #
    # Methods
    # ------------------------------------------------------------------ #

    def _initialize(self) -> dict[str, Any]:
        return {
            "protocolVersion": protocol.PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": self.server_info.to_dict(),
        }

    def _list_tools(self) -> dict[str, Any]:
        tools = filter_tools(self.tool_provider.list_tools(), self.security)
        return {"tools": [t.to_dict() for t in tools]}

    def _audit(self, tool: str, start: float, success: bool, error: str | None = None, timed: bool = True) -> None:
        duration = int((time.time() - start) * 1000) if timed else 0
        log_audit(
            AuditRecord(
                tool=tool,
                client_id=self.client_id,
                timestamp_ms=int(start * 1000),
                duration_ms=duration,
                success=success,
                error=error,
            ),
            self.security,
        )

    def _call_tool(self, request_id: int | str, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict) or not params.get("name"):
            return protocol.make_error(request_id, protocol.INVALID_PARAMS, "Missing tool name")

        name = str(params["name"])
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}
        start = time.time()

        # 1. allow-list
        if not is_tool_allowed(name, self.security):
            self._audit(name, start, False, "blocked", timed=False)
            return protocol.make_error(request_id, protocol.INVALID_REQUEST, f"Tool not allowed: {name}")

        # 2. rate limit
        limited = check_rate_limit(self.client_id, self.security)
        if limited:
            self._audit(name, start, False, "rate_limited", timed=False)
            return protocol.make_error(request_id, protocol.RATE_LIMITED, limited)

        # 3. injection screen, then schema
        injection = sanitize_tool_args(arguments)
        if injection:
            self._audit(name, start, False, "injection", timed=False)
            return protocol.make_error(request_id, protocol.INVALID_PARAMS, injection)

        tool = self.tool_provider.get_tool(name)
        if tool is None:
            self._audit(name, start, False, "not_found", timed=False)
            return protocol.make_error(request_id, protocol.INVALID_PARAMS, f"Tool not found: {name}")

        valid, errors = validate_schema(arguments, tool.input_schema)
        if not valid:
            self._audit(name, start, False, "invalid_arguments", timed=False)
            return protocol.make_error(
                request_id, protocol.INVALID_PARAMS, f"Invalid arguments: {'; '.join(errors)}"
            )

        # 4. execute under a deadline
        try:
            result = self._execute(name, arguments)
        except ToolTimeoutError as exc:
            self._audit(name, start, False, str(exc))
            return protocol.make_result(request_id, ToolResult.from_text(str(exc), is_error=True).to_dict())
        except CapabilityNotFoundError as exc:
            self._audit(name, start, False, str(exc))
            return protocol.make_error(request_id, protocol.INVALID_PARAMS, str(exc))
        except Exception as exc:
            logger.warning("Tool '%s' failed: %s", name, exc)
            self._audit(name, start, False, str(exc) or type(exc).__name__)
            return protocol.make_error(
                request_id, protocol.INTERNAL_ERROR, str(exc) or "Tool execution failed"
            )

        # 5. audit
        self._audit(name, start, not result.is_error)
        return protocol.make_result(request_id, result.to_dict())

    def _execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        timeout_ms = self.settings.tool_timeout_ms
        with self._tool_lock:
            busy = self._tools_running
            self._tools_running += 1
        if busy >= self._max_tool_workers:
            # Timed-out tools keep their worker until they return.
            logger.warning(
                "Tool pool saturated (%d running, %d workers); '%s' will queue",
                busy, self._max_tool_workers, name,
            )
        future = self._tool_pool.submit(self.tool_provider.call_tool, name, arguments)
        future.add_done_callback(self._tool_finished)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError:
            # The worker cannot be interrupted; its eventual result is discarded.
            future.cancel()
            raise ToolTimeoutError(name, timeout_ms) from None

    def _tool_finished(self, _future) -> None:
        with self._tool_lock:
            self._tools_running -= 1

    # ------------------------------------------------------------------ #
    # Stdio loop
    # ------------------------------------------------------------------ #

    def send(self, message: dict[str, Any]) -> None:
        out = self._stdout or sys.stdout.buffer
        with self._write_lock:
            out.write(encode(message))
            out.flush()

    def _process(self, line: bytes) -> None:
        try:
            response = self.handle_line(line)
        except Exception:
            logger.exception("Unhandled error processing request")
            return
        if response is not None:
            try:
                self.send(response)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to write response: %s", exc)

    def serve(self, stdin: IO[bytes] | None = None) -> int:
        """Serve until end of input, drain in-flight requests, return 0."""
        source = stdin or sys.stdin.buffer
        logger.info("FlipAgent MCP server started (stdio)")
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="mcp-request") as pool:
            for line in iter(source.readline, b""):
                if line.strip():
                    pool.submit(self._process, line)
        self._tool_pool.shutdown(wait=False)
        logger.info("MCP server input closed, shutting down")
        return 0
