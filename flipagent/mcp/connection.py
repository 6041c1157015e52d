"""Connection -- one external MCP server driven as a stdio subprocess.

Lifecycle::

    DISCONNECTED -> CONNECTING -> INITIALIZING -> READY -> (RECONNECTING | DISCONNECTED)

Threads per live process:

* stdout reader -- feeds bytes through the frame decoder, routes
  responses to the correlator and notifications to the notification
  channel, then waits for the process and runs the exit handler
  (exactly once per process instance).
* stderr reader -- diagnostic logging only, never parsed.

Callers of :meth:`request` block only on their own Future; any number
of requests may be in flight and responses are matched by ID.  State
transitions happen under ``_lock``; frame writes under ``_write_lock``
so frames never interleave.
"""

from __future__ import annotations

import contextlib
import logging
import os
import queue
import shlex
import subprocess
import threading
from enum import Enum
from typing import Any, Callable

import psutil

from flipagent.config import MCPSettings
from flipagent.mcp import protocol
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
from flipagent.mcp.codec import FrameDecoder, encode
from flipagent.mcp.correlator import RequestCorrelator
from flipagent.mcp.errors import (
    MCPError,
    MCPLifecycleError,
    MCPTransportError,
    NotConnectedError,
    ReconnectExhaustedError,
    ServerExitedError,
)
from flipagent.mcp.reconnect import ReconnectSupervisor
from flipagent.mcp.streaming import ResourceStream

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE_SIZE = 1000
_READ_CHUNK = 65536


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    RECONNECTING = "reconnecting"


class Connection:
    """Runtime state and client API for one :class:`ServerConfig`."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        settings: MCPSettings | None = None,
        client_info: MCPClientInfo | None = None,
        reconnect_wait: Callable[[float], bool] | None = None,
    ):
        self.config = config
        self.name = config.name
        self.settings = settings or MCPSettings.from_env()
        self.client_info = client_info or MCPClientInfo()
        self.state = ConnectionState.DISCONNECTED
        self.server_info: ServerInfo | None = None
        self.notifications: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=NOTIFICATION_QUEUE_SIZE)

        self._proc: subprocess.Popen | None = None
        self._decoder = FrameDecoder()
        self._correlator = RequestCorrelator()
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._connect_lock = threading.Lock()
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self._supervisor = ReconnectSupervisor(
            self.name,
            self._reconnect,
            max_attempts=config.max_retries,
            base_ms=config.reconnect_base_ms,
            max_ms=config.reconnect_max_ms,
            wait=reconnect_wait,
            on_exhausted=self._on_reconnect_exhausted,
        )

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def pid(self) -> int | None:
        proc = self._proc
        return proc.pid if proc is not None else None

    @property
    def pending_count(self) -> int:
        return len(self._correlator)

    @property
    def reconnect_attempts(self) -> int:
        return self._supervisor.attempts

    @property
    def request_timeout_ms(self) -> int:
        return self.config.request_timeout_ms or self.settings.request_timeout_ms

    def add_notification_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        """Call ``listener(frame)`` for every notification, in arrival order."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def connect(self) -> None:
        """Spawn the server process and perform the ``initialize`` handshake.

        No-op when already READY.  Raises :class:`MCPError` on failure,
        leaving the connection DISCONNECTED.
        """
        with self._connect_lock:
            if self.state == ConnectionState.READY:
                return
            if not self.config.command:
                raise MCPLifecycleError(
                    f"MCP server '{self.name}': command is required for stdio transport"
                )
            if self.config.transport != "stdio":
                raise MCPLifecycleError(
                    f"MCP server '{self.name}': unsupported transport '{self.config.transport}'"
                )

            with self._lock:
                self.state = ConnectionState.CONNECTING
            try:
                proc = self._spawn()
            except OSError as exc:
                with self._lock:
                    self.state = ConnectionState.DISCONNECTED
                raise MCPLifecycleError(f"Failed to launch MCP server '{self.name}': {exc}") from exc

            with self._lock:
                self._proc = proc
                self._decoder = FrameDecoder()
                self.state = ConnectionState.INITIALIZING
            self._start_readers(proc)

            try:
                self._handshake(proc)
            except Exception:
                # Any handshake failure must not leave the process behind.
                with self._lock:
                    if self._proc is proc:
                        self._proc = None
                    self.state = ConnectionState.DISCONNECTED
                self._terminate(proc)
                raise

    def disconnect(self) -> None:
        """Reject pending requests and kill the process.  Idempotent."""
        self._supervisor.cancel()
        with self._lock:
            proc = self._proc
            self._proc = None
            was = self.state
            self.state = ConnectionState.DISCONNECTED
        rejected = self._correlator.reject_all(MCPLifecycleError("MCP client disconnected"))
        if proc is not None:
            self._terminate(proc)
        if proc is not None or was != ConnectionState.DISCONNECTED:
            logger.info("MCP server '%s' disconnected (%d pending rejected)", self.name, rejected)

    def _handshake(self, proc: subprocess.Popen) -> None:
        result = self._request(proc, protocol.METHOD_INITIALIZE, {
            "protocolVersion": protocol.PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": self.client_info.to_dict(),
        })
        info = ServerInfo.from_initialize(result if isinstance(result, dict) else {})

        # Held across the notification write so the exit handler observes
        # READY for any exit that follows the server seeing "initialized".
        with self._lock:
            if self._proc is not proc:
                raise NotConnectedError(f"MCP server '{self.name}' went away during initialization")
            self._write(proc, encode(protocol.make_notification(protocol.METHOD_INITIALIZED)))
            self.server_info = info
            self.state = ConnectionState.READY
            self._supervisor.reset()
        logger.info(
            "MCP server '%s' connected (%s %s, protocol %s)",
            self.name, info.name, info.version, info.protocol_version,
        )

    def _reconnect(self) -> None:
        try:
            self.connect()
        except MCPError:
            with self._lock:
                if self.state == ConnectionState.DISCONNECTED and not self._supervisor.cancelled:
                    self.state = ConnectionState.RECONNECTING
            raise

    def _on_reconnect_exhausted(self) -> None:
        with self._lock:
            if self.state == ConnectionState.RECONNECTING:
                self.state = ConnectionState.DISCONNECTED

    def _should_reconnect(self, exit_code: int | None) -> bool:
        if self.config.restart_on_exit:
            return True
        return self.config.retry_on_failure and exit_code != 0

    def _on_process_exit(self, proc: subprocess.Popen, exit_code: int | None) -> None:
        with self._lock:
            if self._proc is not proc:
                # Replaced or explicitly disconnected; nothing to do.
                return
            self._proc = None
            was_ready = self.state == ConnectionState.READY
            self.state = ConnectionState.DISCONNECTED
        logger.info("MCP server '%s' exited with code %s", self.name, exit_code)

        self._correlator.reject_all(ServerExitedError(self.name, exit_code))

        if was_ready and self._should_reconnect(exit_code):
            with self._lock:
                self.state = ConnectionState.RECONNECTING
            self._supervisor.trigger()

    # ------------------------------------------------------------------ #
    # Process and I/O
    # ------------------------------------------------------------------ #

    def _spawn(self) -> subprocess.Popen:
        argv = [*shlex.split(self.config.command, posix=os.name != "nt"), *self.config.args]
        env = {**os.environ, **self.config.env}
        logger.debug("Launching MCP server '%s': %s", self.name, argv)
        return subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=self.config.cwd or None,
        )

    def _start_readers(self, proc: subprocess.Popen) -> None:
        for target, suffix in ((self._read_stdout, "out"), (self._read_stderr, "err")):
            threading.Thread(
                target=target,
                args=(proc,),
                name=f"mcp-{self.name}-{suffix}",
                daemon=True,
            ).start()

    def _read_stdout(self, proc: subprocess.Popen) -> None:
        decoder = self._decoder
        stream = proc.stdout
        try:
            while True:
                data = stream.read1(_READ_CHUNK)
                if not data:
                    break
                for frame in decoder.feed(data):
                    self._route(proc, frame)
        except (OSError, ValueError) as exc:
            logger.debug("MCP server '%s' stdout closed: %s", self.name, exc)
        self._on_process_exit(proc, proc.wait())

    def _read_stderr(self, proc: subprocess.Popen) -> None:
        try:
            for line in iter(proc.stderr.readline, b""):
                logger.debug("[%s] stderr: %s", self.name, line.decode("utf-8", "replace").rstrip())
        except (OSError, ValueError):
            pass

    def _route(self, proc: subprocess.Popen, frame: dict[str, Any]) -> None:
        try:
            if protocol.is_notification(frame):
                self._deliver_notification(frame)
            elif protocol.is_request(frame):
                self._answer_server_request(proc, frame)
            else:
                self._correlator.resolve(frame)
        except Exception:
            logger.exception("Error routing frame from MCP server '%s'", self.name)

    def _deliver_notification(self, frame: dict[str, Any]) -> None:
        logger.debug("Notification from '%s': %s", self.name, frame.get("method"))
        try:
            self.notifications.put_nowait(frame)
        except queue.Full:
            # Drop the oldest so the channel keeps the most recent frames.
            with contextlib.suppress(queue.Empty):
                self.notifications.get_nowait()
            self.notifications.put_nowait(frame)
        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception as exc:
                logger.warning("Notification listener for '%s' failed: %s", self.name, exc)

    def _answer_server_request(self, proc: subprocess.Popen, frame: dict[str, Any]) -> None:
        if frame["method"] == protocol.METHOD_PING:
            reply = protocol.make_result(frame["id"], {})
        else:
            reply = protocol.make_error(
                frame["id"], protocol.METHOD_NOT_FOUND, f"Method not found: {frame['method']}"
            )
        try:
            self._write(proc, encode(reply))
        except MCPTransportError as exc:
            logger.debug("Could not answer server request on '%s': %s", self.name, exc)

    def _write(self, proc: subprocess.Popen, data: bytes) -> None:
        with self._write_lock:
            try:
                proc.stdin.write(data)
                proc.stdin.flush()
            except (OSError, ValueError) as exc:
                raise MCPTransportError(f"Failed to write to MCP server '{self.name}': {exc}") from exc

    def _terminate(self, proc: subprocess.Popen) -> None:
        """Kill the server and any children it spawned (npx, uvx, ...)."""
        try:
            children = psutil.Process(proc.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            with contextlib.suppress(psutil.Error):
                child.kill()
        if proc.poll() is None:
            with contextlib.suppress(OSError):
                proc.kill()
        with contextlib.suppress(OSError, ValueError):
            proc.stdin.close()

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def request(self, method: str, params: dict | None = None, timeout_ms: int | None = None) -> Any:
        """Send a request and block until its response, error or deadline."""
        with self._lock:
            proc = self._proc
            ready = self.state == ConnectionState.READY
        if proc is None or not ready:
            if self._supervisor.exhausted:
                raise ReconnectExhaustedError(self.name, self._supervisor.attempts)
            raise NotConnectedError(f"MCP server '{self.name}' is not connected ({self.state.value})")
        return self._request(proc, method, params, timeout_ms)

    def _request(
        self,
        proc: subprocess.Popen,
        method: str,
        params: dict | None = None,
        timeout_ms: int | None = None,
    ) -> Any:
        pending = self._correlator.register(method, timeout_ms or self.request_timeout_ms)
        logger.debug("-> %s #%d %s", self.name, pending.id, method)
        try:
            self._write(proc, encode(protocol.make_request(pending.id, method, params)))
        except MCPTransportError as exc:
            self._correlator.reject(pending.id, exc)
        return pending.wait()

    def notify(self, method: str, params: dict | None = None) -> None:
        """Send a one-way notification."""
        with self._lock:
            proc = self._proc
        if proc is None:
            raise NotConnectedError(f"MCP server '{self.name}' is not connected")
        self._write(proc, encode(protocol.make_notification(method, params)))

    # ------------------------------------------------------------------ #
    # MCP methods
    # ------------------------------------------------------------------ #

    def list_tools(self) -> list[Tool]:
        result = self.request(protocol.METHOD_TOOLS_LIST) or {}
        return [Tool.from_dict(t) for t in result.get("tools") or []]

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        result = self.request(protocol.METHOD_TOOLS_CALL, {"name": name, "arguments": arguments or {}})
        return ToolResult.from_dict(result or {})

    def list_resources(self) -> list[Resource]:
        result = self.request(protocol.METHOD_RESOURCES_LIST) or {}
        return [Resource.from_dict(r) for r in result.get("resources") or []]

    def list_resource_templates(self) -> list[ResourceTemplate]:
        result = self.request(protocol.METHOD_RESOURCE_TEMPLATES_LIST) or {}
        return [ResourceTemplate.from_dict(t) for t in result.get("resourceTemplates") or []]

    def _read_contents(self, uri: str) -> list[ResourceContent]:
        result = self.request(protocol.METHOD_RESOURCES_READ, {"uri": uri}) or {}
        return [ResourceContent.from_dict(c) for c in result.get("contents") or []]

    def read_resource(self, uri: str) -> ResourceContent:
        contents = self._read_contents(uri)
        return contents[0] if contents else ResourceContent(uri=uri)

    def stream_resource(self, uri: str) -> ResourceStream:
        """Read ``uri`` and return its contents as a chunk sequence."""
        return ResourceStream(self._read_contents(uri), self.settings.resource_chunk_bytes)

    def list_prompts(self) -> list[Prompt]:
        result = self.request(protocol.METHOD_PROMPTS_LIST) or {}
        return [Prompt.from_dict(p) for p in result.get("prompts") or []]

    def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        result = self.request(protocol.METHOD_PROMPTS_GET, params) or {}
        return [m.get("content") for m in result.get("messages") or [] if isinstance(m, dict)]

    def health(self) -> bool:
        try:
            self.list_tools()
            return True
        except MCPError:
            return False
