"""Security pipeline for the inbound MCP server.

Tool allow-listing, per-client rate limiting, argument injection
screening and audit logging.  Everything is opt-in: with no security
file and no ``FLIPAGENT_MCP_*`` variables every tool is allowed, the
rate limit is 60 calls/minute and audit records are written.

Configuration is read from an optional YAML file and then overridden
field-by-field by environment variables::

    # .flipagent/mcp-security.yaml
    allowed_tools: [flipagent_sourcing_scan]
    blocked_tools: []
    rate_limit: 120
    audit: true
    tool_profile: full
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TypeVar

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SECURITY_FILE = Path(".flipagent") / "mcp-security.yaml"
DEFAULT_RATE_LIMIT = 60
RATE_WINDOW_MS = 60_000
MAX_RATE_LIMIT_KEYS = 10_000

# Predefined sets of allowed tool-name prefixes.  "full" allows everything.
TOOL_PROFILES: dict[str, tuple[str, ...]] = {
    "read-only": (
        "flipagent_sourcing", "flipagent_search",
        "flipagent_analytics", "flipagent_portfolio",
    ),
    "sourcing": (
        "flipagent_sourcing", "flipagent_search",
        "flipagent_analytics", "flipagent_portfolio",
        "flipagent_listing", "flipagent_fulfillment",
    ),
    "full": (),
}

T = TypeVar("T")


# ------------------------------------------------------------------ #
# Rate limiting
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int


class RateLimiter:
    """Sliding-window limiter keyed by client id.

    The key table is bounded: once it holds more than ``max_keys``
    entries the least recently used key is dropped.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int = RATE_WINDOW_MS,
        max_keys: int = MAX_RATE_LIMIT_KEYS,
        clock: Callable[[], float] | None = None,
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.max_keys = max_keys
        self._clock = clock or (lambda: time.time() * 1000)
        self._windows: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitResult:
        """Record one call for ``key`` if the window has room."""
        with self._lock:
            now = self._clock()
            window_start = now - self.window_ms
            stamps = [t for t in self._windows.get(key, ()) if t > window_start]
            reset_in = max(0, int(stamps[0] + self.window_ms - now)) if stamps else 0

            if len(stamps) >= self.max_requests:
                self._windows[key] = stamps
                return RateLimitResult(False, 0, reset_in)

            remaining = self.max_requests - len(stamps) - 1
            stamps.append(now)
            self._windows.pop(key, None)
            self._windows[key] = stamps
            while len(self._windows) > self.max_keys:
                self._windows.popitem(last=False)
            return RateLimitResult(True, remaining, reset_in)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def cleanup(self) -> None:
        """Drop keys with no calls inside the current window."""
        with self._lock:
            window_start = self._clock() - self.window_ms
            for key in list(self._windows):
                stamps = [t for t in self._windows[key] if t > window_start]
                if stamps:
                    self._windows[key] = stamps
                else:
                    del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #


@dataclass
class SecurityConfig:
    """Security settings for one inbound server instance.

    Owns its rate limiter, so two servers in one process never share
    call budgets.
    """

    allowed_tools: frozenset[str] = frozenset()
    blocked_tools: frozenset[str] = frozenset()
    rate_limit: int = DEFAULT_RATE_LIMIT
    audit_enabled: bool = True
    tool_profile: str = "full"
    rate_limiter: RateLimiter = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.rate_limiter = RateLimiter(max_requests=self.rate_limit)

    @property
    def has_filters(self) -> bool:
        return bool(self.blocked_tools or self.allowed_tools or TOOL_PROFILES.get(self.tool_profile))


def _split_names(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    else:
        items = value
    return frozenset(s for s in (str(i).strip() for i in items) if s)


def _parse_rate_limit(value: Any) -> int:
    try:
        rate = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid MCP rate limit %r", value)
        return DEFAULT_RATE_LIMIT
    if rate <= 0:
        logger.warning("Ignoring non-positive MCP rate limit %r", value)
        return DEFAULT_RATE_LIMIT
    return rate


def _read_security_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read MCP security file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring MCP security file %s: expected a mapping", path)
        return {}
    return data


def load_security_config(
    environ: Mapping[str, str] | None = None,
    path: str | Path | None = None,
) -> SecurityConfig:
    """Build a :class:`SecurityConfig` from the YAML file and environment."""
    env = os.environ if environ is None else environ
    file_path = Path(path or env.get("FLIPAGENT_MCP_SECURITY_FILE") or DEFAULT_SECURITY_FILE)
    data = _read_security_file(file_path) if file_path.is_file() else {}

    allowed = env.get("FLIPAGENT_MCP_ALLOWED_TOOLS", data.get("allowed_tools"))
    blocked = env.get("FLIPAGENT_MCP_BLOCKED_TOOLS", data.get("blocked_tools"))
    rate = env.get("FLIPAGENT_MCP_RATE_LIMIT", data.get("rate_limit", DEFAULT_RATE_LIMIT))
    audit = env.get("FLIPAGENT_MCP_AUDIT")
    audit_enabled = audit.strip().lower() != "false" if audit is not None else data.get("audit", True) is not False
    profile = env.get("FLIPAGENT_MCP_TOOL_PROFILE") or data.get("tool_profile") or "full"

    return SecurityConfig(
        allowed_tools=_split_names(allowed),
        blocked_tools=_split_names(blocked),
        rate_limit=_parse_rate_limit(rate),
        audit_enabled=audit_enabled,
        tool_profile=str(profile).strip(),
    )


# ------------------------------------------------------------------ #
# Tool allow-listing
# ------------------------------------------------------------------ #


def is_tool_allowed(name: str, config: SecurityConfig) -> bool:
    if name in config.blocked_tools:
        return False
    if config.allowed_tools:
        return name in config.allowed_tools
    prefixes = TOOL_PROFILES.get(config.tool_profile)
    if prefixes:
        return name.startswith(prefixes)
    return True


def filter_tools(tools: list[T], config: SecurityConfig, name: Callable[[T], str] | None = None) -> list[T]:
    """Keep only allowed tools.  Returns ``tools`` itself when no filter applies."""
    if not config.has_filters:
        return tools
    get_name = name or (lambda t: t.name)
    return [t for t in tools if is_tool_allowed(get_name(t), config)]


def check_rate_limit(client_id: str, config: SecurityConfig) -> str | None:
    """None when the call may proceed, otherwise the rejection message."""
    result = config.rate_limiter.check(client_id)
    if result.allowed:
        return None
    return (
        f"Rate limited: {config.rate_limit} calls/min exceeded. "
        f"Retry in {math.ceil(result.reset_in_ms / 1000)}s"
    )


# ------------------------------------------------------------------ #
# Injection screening
# ------------------------------------------------------------------ #


class InjectionDetector:
    """Pattern screen for common injection payloads in string input."""

    SQL_PATTERNS = (
        re.compile(r"'\s*(?:OR|AND)\s*'?\d*'?\s*=\s*'?\d*'?", re.IGNORECASE),
        re.compile(r";\s*(?:DROP|DELETE|UPDATE|INSERT)\s", re.IGNORECASE),
        re.compile(r"UNION\s+(?:ALL\s+)?SELECT", re.IGNORECASE),
    )
    COMMAND_PATTERNS = (
        re.compile(r";\s*(?:rm|cat|ls|wget|curl|bash|sh|chmod|chown|kill|pkill|dd|nc|ncat)\s", re.IGNORECASE),
        re.compile(r"`[^`]+`"),
        re.compile(r"\$\([^)]+\)"),
        re.compile(r"\|\s*(?:cat|ls|rm|wget|curl|bash|sh|nc)\s", re.IGNORECASE),
        re.compile(r"&&\s*(?:rm|cat|wget|curl|bash|sh)\s", re.IGNORECASE),
    )
    XSS_PATTERNS = (
        re.compile(r"<script[\s>]", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"on\w+\s*=", re.IGNORECASE),
    )
    PATH_TRAVERSAL = re.compile(r"\.\./|\.\.\\")

    @classmethod
    def detect(cls, text: str) -> list[str]:
        """Return the threat categories found in ``text`` (empty when safe)."""
        threats = []
        if any(p.search(text) for p in cls.SQL_PATTERNS):
            threats.append("SQL injection")
        if any(p.search(text) for p in cls.COMMAND_PATTERNS):
            threats.append("Command injection")
        if any(p.search(text) for p in cls.XSS_PATTERNS):
            threats.append("XSS")
        if cls.PATH_TRAVERSAL.search(text):
            threats.append("Path traversal")
        return threats


def sanitize_tool_args(args: dict[str, Any]) -> str | None:
    """Scan every string in ``args`` (recursively).

    Returns None when clean, otherwise
    ``"Injection detected: <path>: <kinds>; ..."``.
    """
    found: list[str] = []

    def _scan(value: Any, path: str) -> None:
        if isinstance(value, str):
            threats = InjectionDetector.detect(value)
            if threats:
                found.append(f"{path}: {', '.join(threats)}")
        elif isinstance(value, list):
            for i, item in enumerate(value):
                _scan(item, f"{path}[{i}]")
        elif isinstance(value, dict):
            for key, item in value.items():
                _scan(item, f"{path}.{key}")

    for key, value in (args or {}).items():
        _scan(value, key)
    return f"Injection detected: {'; '.join(found)}" if found else None


# ------------------------------------------------------------------ #
# Audit
# ------------------------------------------------------------------ #

audit_logger = logging.getLogger("flipagent.mcp.audit")


def _configure_audit_logger() -> None:
    # Audit lines go to stderr regardless of CLI verbosity; stdout is
    # reserved for protocol frames.
    if audit_logger.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


_configure_audit_logger()


@dataclass(frozen=True)
class AuditRecord:
    """One inbound ``tools/call`` attempt, whatever its outcome."""

    tool: str
    client_id: str
    timestamp_ms: int
    duration_ms: int
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "level": "info",
            "time": self.timestamp_ms,
            "audit": True,
            "tool": self.tool,
            "client": self.client_id,
            "durationMs": self.duration_ms,
            "success": self.success,
        }
        if self.error:
            record["error"] = self.error
        return record


def log_audit(record: AuditRecord, config: SecurityConfig) -> None:
    if not config.audit_enabled:
        return
    audit_logger.info(json.dumps(record.to_dict(), separators=(",", ":")))
