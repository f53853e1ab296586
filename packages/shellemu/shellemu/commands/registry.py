from __future__ import annotations

import re
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from protocol.errors import FileNotFoundInWorkspace, SandboxError
from shellemu.streams import IO
from workspace.path_utils import normalize_virtual_path

if TYPE_CHECKING:
    from shellemu.interpreter import ShellInterpreter

CommandFn = Callable[["CommandContext", List[str]], int]

COMMANDS: Dict[str, CommandFn] = {}

NEGATIVE_NUMBER_RE = re.compile(r"-\d+")


class UsageError(Exception):
    pass


def command(*names: str) -> Callable[[CommandFn], CommandFn]:
    def decorator(fn: CommandFn) -> CommandFn:
        for name in names:
            COMMANDS[name] = fn
        return fn

    return decorator


def getopt(args: List[str], spec: str, allow_numbers: bool = False) -> Tuple[Dict[str, Union[bool, str]], List[str]]:
    """Short-option parsing in the style of getopt(3).

    ``spec`` lists the accepted letters; a letter followed by ``:`` takes a
    value. Options and operands may be interleaved; ``--`` ends options.
    """
    opts: Dict[str, Union[bool, str]] = {}
    operands: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            operands.extend(args[i + 1:])
            break
        if not arg.startswith("-") or arg == "-" or (allow_numbers and NEGATIVE_NUMBER_RE.fullmatch(arg)):
            operands.append(arg)
            i += 1
            continue
        j = 1
        while j < len(arg):
            ch = arg[j]
            index = spec.find(ch)
            if ch == ":" or index == -1:
                raise UsageError(f"invalid option -- '{ch}'")
            if index + 1 < len(spec) and spec[index + 1] == ":":
                value = arg[j + 1:]
                if not value:
                    i += 1
                    if i >= len(args):
                        raise UsageError(f"option requires an argument -- '{ch}'")
                    value = args[i]
                opts[ch] = value
                break
            opts[ch] = True
            j += 1
        i += 1
    return opts, operands


class CommandContext:
    """What a utility sees of the shell: its streams, cwd, env and the bridge."""

    def __init__(self, interpreter: "ShellInterpreter", name: str, io: IO, env: Mapping[str, str]) -> None:
        self.interpreter = interpreter
        self.name = name
        self.fs = interpreter.fs
        self.cwd = interpreter.state.cwd
        self.stdin = io.stdin
        self.stdout = io.stdout
        self.stderr = io.stderr
        self.env = dict(env)

    def write(self, text: str) -> None:
        self.stdout.write(text)

    def error(self, message: str) -> None:
        self.stderr.write(f"{self.name}: {message}\n")

    def virtual(self, path: str) -> str:
        return normalize_virtual_path(path, self.cwd)

    def read_text(self, path: str) -> str:
        return self.fs.read_text(path, self.cwd)

    def inputs(self, paths: List[str]) -> Iterator[Tuple[str, Optional[str]]]:
        """Yield ``(name, text)`` per operand, stdin when there are none.

        Unreadable operands are reported on stderr and yield ``None``.
        """
        if not paths:
            yield "-", self.stdin.read()
            return
        for path in paths:
            if path == "-":
                yield path, self.stdin.read()
                continue
            try:
                if self.fs.is_dir(path, self.cwd):
                    self.error(f"{path}: Is a directory")
                    yield path, None
                    continue
                yield path, self.read_text(path)
            except FileNotFoundInWorkspace:
                self.error(f"{path}: No such file or directory")
                yield path, None
            except SandboxError as exc:
                self.error(f"{path}: {exc.message}")
                yield path, None


def split_lines(text: str) -> List[str]:
    """Lines without their terminators; a trailing newline adds no empty line."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def join_lines(lines: List[str]) -> str:
    return "".join(line + "\n" for line in lines)
