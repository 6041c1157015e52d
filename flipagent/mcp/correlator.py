"""Request correlator -- matches responses to pending requests by ID.

IDs come from a per-instance counter, so they are unique for the
lifetime of the owning Connection (across process replacements).  Each
pending entry carries a :class:`concurrent.futures.Future` and a
deadline timer.  Whoever removes the entry from the table first settles
it; later settlement attempts for the same ID are no-ops.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from flipagent.mcp.errors import MCPError, MCPProtocolError, MCPTimeoutError
from flipagent.mcp.protocol import INTERNAL_ERROR

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """Correlation-table entry for one in-flight request."""

    id: int
    method: str
    timeout_ms: int
    future: Future = field(default_factory=Future)
    timer: threading.Timer | None = None

    def wait(self) -> Any:
        """Block until settled; returns the result or raises the error."""
        return self.future.result()


class RequestCorrelator:
    """Thread-safe table of pending requests for one Connection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._next_id = 0
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending

    def register(self, method: str, timeout_ms: int) -> PendingRequest:
        """Allocate the next ID and arm its deadline."""
        delay = timeout_ms / 1000.0
        with self._lock:
            self._next_id += 1
            pending = PendingRequest(id=self._next_id, method=method, timeout_ms=timeout_ms)
            self._pending[pending.id] = pending

        timer = threading.Timer(delay, self._expire, args=(pending.id,))
        timer.daemon = True
        pending.timer = timer
        timer.start()
        return pending

    def resolve(self, frame: dict[str, Any]) -> bool:
        """Settle the entry matching a response frame.

        Returns False (and logs) when no entry has that ID, e.g. a late
        reply to a request that already timed out.
        """
        request_id = frame.get("id")
        error = frame.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            if not isinstance(code, int) or isinstance(code, bool):
                code = INTERNAL_ERROR
            outcome: Any = MCPProtocolError(
                code,
                str(error.get("message", "Unknown error")),
                error.get("data"),
            )
            settled = self._settle(request_id, error=outcome)
        else:
            settled = self._settle(request_id, result=frame.get("result"))
        if not settled:
            logger.warning("Discarding MCP response with unknown ID: %r", request_id)
        return settled

    def reject(self, request_id: int, error: MCPError) -> bool:
        return self._settle(request_id, error=error)

    def reject_all(self, error: MCPError) -> int:
        """Reject every pending entry; returns how many were rejected."""
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for pending in entries:
            self._finish(pending, error=error)
        return len(entries)

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _expire(self, request_id: int) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is not None:
            logger.debug("MCP request %s (%s) timed out", request_id, pending.method)
            self._finish(pending, error=MCPTimeoutError(pending.method, pending.timeout_ms))

    def _settle(self, request_id: Any, result: Any = None, error: MCPError | None = None) -> bool:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        self._finish(pending, result=result, error=error)
        return True

    @staticmethod
    def _finish(pending: PendingRequest, result: Any = None, error: MCPError | None = None) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
