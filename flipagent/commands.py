"""Command table registration for flipagent."""

from knack.commands import CommandGroup


def load_command_table(self, _):
    """Register all ``flipagent mcp`` commands."""

    with CommandGroup(self, "mcp", "flipagent.custom#{}") as g:
        g.command("serve", "mcp_serve")
        g.command("status", "mcp_status")
        g.command("tools", "mcp_tools")
        g.command("call", "mcp_call")
        g.command("call-batch", "mcp_call_batch")
        g.command("resources", "mcp_resources")
        g.command("read", "mcp_read")
        g.command("prompts", "mcp_prompts")
        g.command("prompt", "mcp_prompt")
        g.command("install", "mcp_install")
        g.command("uninstall", "mcp_uninstall")

    with CommandGroup(self, "mcp config", "flipagent.custom#{}") as g:
        g.command("show", "mcp_config_show")
