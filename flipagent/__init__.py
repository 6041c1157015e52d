"""flipagent: MCP client registry and stdio server for the FlipAgent toolkit."""

from knack.commands import CLICommandsLoader

__version__ = "0.1.0"


class FlipAgentCommandsLoader(CLICommandsLoader):
    """Command loader for the ``flipagent`` CLI."""

    def load_command_table(self, args):
        from flipagent._help import helps  # noqa: F401
        from flipagent.commands import load_command_table

        load_command_table(self, args)
        return super().load_command_table(args)

    def load_arguments(self, command):
        from flipagent._params import load_arguments

        load_arguments(self, command)
        super().load_arguments(command)


COMMAND_LOADER_CLS = FlipAgentCommandsLoader
