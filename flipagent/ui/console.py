"""Rich-based console for human-oriented CLI messages.

Always bound to standard error: standard output belongs to knack's
result formatter and, in ``mcp serve``, to protocol frames.
"""

from __future__ import annotations

import sys
import time
from contextlib import contextmanager
from typing import Iterator

from rich.console import Console as RichConsole
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.theme import Theme

# -------------------------------------------------------------------- #
# Color scheme
# -------------------------------------------------------------------- #

THEME = Theme({
    "dim": "#888888",
    "success": "bright_green",
    "error": "bright_red",
    "warning": "bright_yellow",
    "accent": "bright_magenta",
    "server": "bright_magenta bold",
})


class Console:
    """Styled stderr output with semantic markers."""

    def __init__(self, file=None):
        self._console = RichConsole(theme=THEME, highlight=False, file=file or sys.stderr)

    def print_dim(self, message: str):
        self._console.print(message, style="dim")

    def print_success(self, message: str):
        self._console.print(f"[success]✓[/success] {message}")

    def print_warning(self, message: str):
        self._console.print(f"[warning]![/warning] {message}")

    def print_server_table(self, rows: list[dict]):
        """Render ``mcp status`` rows (name, state, server, health)."""
        table = Table(show_header=True, header_style="accent bold")
        for column in ("Server", "State", "Identity", "Healthy"):
            table.add_column(column)
        for row in rows:
            identity = row.get("serverInfo") or {}
            table.add_row(
                f"[server]{row['name']}[/server]",
                row.get("state", ""),
                f"{identity.get('name', '')} {identity.get('version', '')}".strip(),
                "[success]yes[/success]" if row.get("healthy") else "[error]no[/error]",
            )
        self._console.print(table)

    @contextmanager
    def spinner(self, message: str) -> Iterator[None]:
        """Spinner while an operation runs, then a persistent completion line."""
        start = time.monotonic()
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self._console,
            transient=True,
        )
        with progress:
            progress.add_task(message, total=None)
            yield
        elapsed = time.monotonic() - start
        self._console.print(f"[success]✓[/success] {message} completed. ({elapsed:.1f}s)")


console = Console()
