"""Emulated bash for the sandbox: lexer, parser, interpreter and utilities.

Scripts only ever see the workspace through ``workspace.WorkspaceFS``.
"""
from shellemu.commands import COMMANDS, CommandContext, UsageError, command
from shellemu.interpreter import (
    LIMIT_EXIT_CODE,
    ExecutionLimitExceeded,
    ExecutionLimits,
    RunOutcome,
    ShellInterpreter,
    ShellState,
)
from shellemu.lexer import ShellSyntaxError
from shellemu.parser import parse

__all__ = [
    "COMMANDS",
    "LIMIT_EXIT_CODE",
    "CommandContext",
    "ExecutionLimitExceeded",
    "ExecutionLimits",
    "RunOutcome",
    "ShellInterpreter",
    "ShellState",
    "ShellSyntaxError",
    "UsageError",
    "command",
    "parse",
]
