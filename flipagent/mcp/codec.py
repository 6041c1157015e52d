"""Wire codec -- newline-delimited JSON-RPC frames.

Each message is a single line of UTF-8 JSON terminated by ``\\n``.
``json.dumps`` escapes embedded newlines inside strings, so an encoded
frame never contains a raw newline before its terminator.

Decoding is incremental: bytes arrive in arbitrary chunks, complete
lines are decoded, and the trailing partial line is carried over to
the next call.  Lines that are not valid JSON or fail the envelope
check are dropped with a warning; they never raise.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from flipagent.mcp.protocol import is_valid_envelope

logger = logging.getLogger(__name__)

FRAME_DELIMITER = b"\n"


def encode(message: dict[str, Any]) -> bytes:
    """Serialise one message to a newline-terminated frame."""
    return json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + FRAME_DELIMITER


def decode_line(line: bytes) -> dict[str, Any] | None:
    """Decode a single line (without terminator). Returns None if unusable."""
    text = line.strip()
    if not text:
        return None
    try:
        message = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Dropping malformed MCP frame (%s): %r", exc, text[:200])
        return None
    if not is_valid_envelope(message):
        logger.warning("Dropping MCP frame with invalid JSON-RPC envelope: %r", text[:200])
        return None
    return message


def feed(buffer: bytes) -> tuple[list[dict[str, Any]], bytes]:
    """Split ``buffer`` into complete decoded frames plus the remainder.

    The remainder is the unterminated trailing partial line and must be
    prepended to the next chunk of input.
    """
    *lines, remainder = buffer.split(FRAME_DELIMITER)
    frames = []
    for line in lines:
        message = decode_line(line)
        if message is not None:
            frames.append(message)
    return frames, remainder


class FrameDecoder:
    """Stateful wrapper around :func:`feed` that owns the partial-line buffer."""

    def __init__(self):
        self._buffer = b""

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        frames, self._buffer = feed(self._buffer + data)
        return frames

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet terminated by a newline."""
        return self._buffer

    def reset(self) -> None:
        self._buffer = b""
