"""Reconnect supervisor -- capped exponential backoff with a retry budget.

Triggered from a Connection's exit handler.  Runs serially on one
daemon thread: wait ``min(max_ms, base_ms * 2**attempt)``, bump the
attempt counter, call ``connect``.  A successful connect resets the
counter (the Connection calls :meth:`reset`); a failed one schedules
the next attempt until the budget is spent.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


def backoff_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before reconnect ``attempt`` (0-based), capped at ``max_ms``."""
    return min(max_ms, base_ms * (2 ** attempt))


class ReconnectSupervisor:
    """Serial reconnect loop for a single Connection.

    ``wait`` receives a delay in seconds and returns True when the wait
    was interrupted by :meth:`cancel`; the default waits on an internal
    event.  Tests inject a recording stub.
    """

    def __init__(
        self,
        name: str,
        connect: Callable[[], None],
        *,
        max_attempts: int,
        base_ms: int,
        max_ms: int,
        wait: Callable[[float], bool] | None = None,
        on_exhausted: Callable[[], None] | None = None,
    ):
        self.name = name
        self.max_attempts = max_attempts
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.attempts = 0
        self.exhausted = False
        self._connect = connect
        self._wait = wait
        self._on_exhausted = on_exhausted
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._retrigger = False
        self._cancelled = threading.Event()

    @property
    def active(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def reset(self) -> None:
        """Called after a successful connect."""
        self.attempts = 0
        self.exhausted = False

    def trigger(self) -> bool:
        """Start the reconnect loop unless one is already running.

        A trigger that arrives while the loop is running is remembered:
        if the loop's connect succeeds but the fresh process has already
        exited again, the loop goes round once more instead of ending.
        """
        with self._lock:
            if self.active:
                logger.debug("Reconnect for '%s' already in progress", self.name)
                self._retrigger = True
                return False
            self._cancelled = threading.Event()
            self._retrigger = False
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._cancelled,),
                name=f"mcp-reconnect-{self.name}",
                daemon=True,
            )
            self._thread.start()
            return True

    def cancel(self) -> None:
        """Stop a pending loop (explicit disconnect)."""
        self._cancelled.set()

    def _loop(self, cancelled: threading.Event) -> None:
        reconnected = self.run(cancelled)
        while True:
            with self._lock:
                if not (reconnected and self._retrigger and not cancelled.is_set()):
                    self._retrigger = False
                    # Cleared under the lock so a later trigger starts a new loop.
                    if self._thread is threading.current_thread():
                        self._thread = None
                    return
                self._retrigger = False
            logger.info("MCP server '%s' exited again while reconnecting", self.name)
            reconnected = self.run(cancelled)

    def run(self, cancelled: threading.Event | None = None) -> bool:
        """Run the loop synchronously.  Returns True once reconnected."""
        cancelled = cancelled or self._cancelled
        wait = self._wait or cancelled.wait

        while True:
            if self.attempts >= self.max_attempts:
                self.exhausted = True
                logger.warning(
                    "MCP reconnect attempts exhausted for '%s' (%d/%d)",
                    self.name, self.attempts, self.max_attempts,
                )
                if self._on_exhausted is not None:
                    self._on_exhausted()
                return False

            delay = backoff_delay_ms(self.attempts, self.base_ms, self.max_ms)
            self.attempts += 1
            logger.info(
                "Scheduling MCP reconnect for '%s' (attempt %d/%d) in %dms",
                self.name, self.attempts, self.max_attempts, delay,
            )
            if wait(delay / 1000.0) or cancelled.is_set():
                logger.debug("Reconnect for '%s' cancelled", self.name)
                return False

            with self._lock:
                self._retrigger = False
            try:
                self._connect()
            except Exception as exc:
                logger.warning("MCP reconnect for '%s' failed: %s", self.name, exc)
                continue
            return True
