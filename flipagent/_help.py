"""Help text for flipagent commands."""

from knack.help_files import helps

helps["mcp"] = """
type: group
short-summary: Drive external MCP servers and expose FlipAgent tools over MCP.
long-summary: |
    Servers are read from the mcpServers map of the first config file found
    (./.mcp.json, ./mcp.json, ~/.config/flipagent/mcp.json, ~/.claude/mcp.json)
    unless --config-file is given.

    Names may be qualified as server:name; unqualified names go to the first
    connected server that declares them, in registration order.
"""

helps["mcp serve"] = """
type: command
short-summary: Run the FlipAgent MCP server on standard input/output.
long-summary: |
    Exposes the bundled skills (and, unless --no-upstream, the tools of every
    configured server as server:tool) to an MCP controller. Standard output
    carries protocol frames only; diagnostics and audit records go to stderr.

    Security is configured with ./.flipagent/mcp-security.yaml (or
    FLIPAGENT_MCP_SECURITY_FILE) and the FLIPAGENT_MCP_ALLOWED_TOOLS,
    FLIPAGENT_MCP_BLOCKED_TOOLS, FLIPAGENT_MCP_RATE_LIMIT, FLIPAGENT_MCP_AUDIT
    and FLIPAGENT_MCP_TOOL_PROFILE variables.
examples:
    - name: Serve skills only
      text: flipagent mcp serve --no-upstream
"""

helps["mcp status"] = """
type: command
short-summary: Connect auto-start servers and report their state and health.
"""

helps["mcp tools"] = """
type: command
short-summary: List tools across all connected servers.
examples:
    - name: Tools of one server
      text: flipagent mcp tools --server ebay
"""

helps["mcp call"] = """
type: command
short-summary: Call a tool.
examples:
    - name: Call a qualified tool
      text: flipagent mcp call --name ebay:search --arguments '{"query": "airpods"}'
"""

helps["mcp call-batch"] = """
type: command
short-summary: Call one tool several times, sequentially, on a single server.
long-summary: |
    The first failure aborts the batch; results of calls that already
    completed are discarded.
examples:
    - name: Two searches
      text: flipagent mcp call-batch --name search --arguments-list '[{"q": "a"}, {"q": "b"}]'
"""

helps["mcp resources"] = """
type: command
short-summary: List resources and resource templates across connected servers.
"""

helps["mcp read"] = """
type: command
short-summary: Read a resource, returned as ordered chunks.
"""

helps["mcp prompts"] = """
type: command
short-summary: List prompts across connected servers.
"""

helps["mcp prompt"] = """
type: command
short-summary: Get a prompt's message contents (cached per server, name and arguments).
"""

helps["mcp config"] = """
type: group
short-summary: Inspect MCP client configuration.
"""

helps["mcp config show"] = """
type: command
short-summary: Show the resolved config file and its server entries.
"""

helps["mcp install"] = """
type: command
short-summary: Register FlipAgent as an MCP server in Claude Desktop and Claude Code.
"""

helps["mcp uninstall"] = """
type: command
short-summary: Remove the FlipAgent entry from Claude Desktop and Claude Code configs.
"""
