"""Built-in utilities available to shell scripts.

Importing this package registers every utility in ``COMMANDS``.
"""
from shellemu.commands.registry import (
    COMMANDS,
    CommandContext,
    CommandFn,
    UsageError,
    command,
    getopt,
    join_lines,
    split_lines,
)
from shellemu.commands import core, files, jq, text  # noqa: F401  (registration)

__all__ = [
    "COMMANDS",
    "CommandContext",
    "CommandFn",
    "UsageError",
    "command",
    "getopt",
    "join_lines",
    "split_lines",
]
