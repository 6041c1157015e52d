"""CLI parameter definitions for flipagent."""

from knack.arguments import ArgumentsContext


def load_arguments(self, _):
    """Register CLI parameters for all commands."""

    # --- global: --config-file on every mcp command ---
    with ArgumentsContext(self, "mcp") as c:
        c.argument(
            "config_file",
            options_list=["--config-file", "-c"],
            help="Path to an mcpServers JSON file. Defaults to the first of "
                 "./.mcp.json, ./mcp.json, ~/.config/flipagent/mcp.json, ~/.claude/mcp.json.",
        )

    # --- flipagent mcp serve ---
    with ArgumentsContext(self, "mcp serve") as c:
        c.argument("skills_dir", help="Directory of skill folders (each containing SKILL.md).")
        c.argument(
            "no_upstream",
            options_list=["--no-upstream"],
            help="Do not connect configured servers or re-export their tools.",
            action="store_true",
            default=False,
        )

    with ArgumentsContext(self, "mcp tools") as c:
        c.argument("server", help="Only list tools of this server.")

    for scope in ("mcp call", "mcp call-batch"):
        with ArgumentsContext(self, scope) as c:
            c.argument("name", options_list=["--name", "-n"], help="Tool name, optionally qualified as server:tool.")

    with ArgumentsContext(self, "mcp call") as c:
        c.argument("arguments", help="Tool arguments as a JSON object.")

    with ArgumentsContext(self, "mcp call-batch") as c:
        c.argument("arguments_list", help="JSON array of argument objects, executed in order.")

    with ArgumentsContext(self, "mcp read") as c:
        c.argument("uri", help="Resource URI, optionally qualified as server:uri.")

    with ArgumentsContext(self, "mcp prompt") as c:
        c.argument("name", options_list=["--name", "-n"], help="Prompt name, optionally qualified as server:prompt.")
        c.argument("arguments", help="Prompt arguments as a JSON object of strings.")
