"""Prompt cache -- bounded, TTL-based, insertion-ordered."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    content: Any
    expires_at: float


def prompt_cache_key(server: str | None, prompt: str, arguments: dict[str, Any] | None) -> str:
    """Composite key for (server, prompt name, arguments)."""
    args = json.dumps(arguments or {}, sort_keys=True, separators=(",", ":"))
    return f"{server or 'any'}:{prompt}:{args}"


class PromptCache:
    """TTL cache with a hard cap on entry count.

    Expired entries are dropped lazily on lookup and by :meth:`evict`,
    which also removes the oldest insertions once the cap is exceeded.
    Shared by every caller of one Registry, so all access is locked.
    """

    def __init__(self, ttl_ms: int, max_entries: int = 500, clock: Callable[[], float] | None = None):
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            logger.debug("Prompt cache hit: %s", key)
            return entry.content

    def set(self, key: str, content: Any) -> None:
        with self._lock:
            # Re-inserting moves the key to the newest position.
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(content, self._clock() + self.ttl_ms / 1000.0)
            self._evict_locked()

    def evict(self) -> None:
        with self._lock:
            self._evict_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_locked(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
