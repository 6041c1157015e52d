"""UI utilities for the flipagent CLI (rich console on stderr)."""

from flipagent.ui.console import Console, console

__all__ = [
    "Console",
    "console",
]
