"""Entry point: ``flipagent`` console script and ``python -m flipagent``."""

import os
import sys

from knack import CLI
from knack.help import CLIHelp

from flipagent import COMMAND_LOADER_CLS

CLI_NAME = "flipagent"


class FlipAgentHelp(CLIHelp):
    def __init__(self, cli_ctx=None):
        super().__init__(
            cli_ctx=cli_ctx,
            welcome_message="FlipAgent: MCP client registry and stdio tool server.",
        )


def get_cli() -> CLI:
    return CLI(
        cli_name=CLI_NAME,
        config_dir=os.path.expanduser(os.path.join("~", ".flipagent")),
        config_env_var_prefix=CLI_NAME,
        commands_loader_cls=COMMAND_LOADER_CLS,
        help_cls=FlipAgentHelp,
    )


def main(args=None) -> int:
    return get_cli().invoke(sys.argv[1:] if args is None else args)


if __name__ == "__main__":
    sys.exit(main())
