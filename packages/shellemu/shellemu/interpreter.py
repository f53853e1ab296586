"""Tree-walking interpreter for the shell language.

One ``ShellInterpreter`` holds the persistent state of a shell session
(variables, functions, working directory). ``run`` executes a script with a
fresh set of execution counters; the two circuit breakers
(``maxLoopIterations`` and ``maxCommandCount``) are checked at every loop
iteration and every simple command, which are also the only points where a
runaway script can be stopped.
"""
from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from protocol.errors import SandboxError
from shellemu import arith
from shellemu.commands import COMMANDS, CommandContext, CommandFn, UsageError
from shellemu.globbing import glob_escape, glob_paths, glob_to_regex, has_glob
from shellemu.lexer import BOTH_STREAMS_FD, ShellSyntaxError, lex_template
from shellemu.nodes import (
    AndOr,
    Arith,
    Command,
    CommandList,
    CommandSub,
    ForClause,
    FunctionDef,
    Group,
    IfClause,
    Literal,
    LoopClause,
    Param,
    Pipeline,
    Redirect,
    Segment,
    SimpleCommand,
    Word,
)
from shellemu.parser import parse
from shellemu.streams import IO, FileSink, InputStream, NullSink, OutputBuffer
from workspace.bridge import WorkspaceFS
from workspace.path_utils import VIRTUAL_ROOT, normalize_virtual_path

logger = logging.getLogger(__name__)

LIMIT_EXIT_CODE = 126
MAX_FUNCTION_DEPTH = 64
IFS_WHITESPACE = " \t\n"

DEFAULT_ENV = {
    "HOME": VIRTUAL_ROOT,
    "PATH": "/usr/local/bin:/usr/bin:/bin",
    "USER": "sandbox",
    "SHELL": "/bin/bash",
    "LANG": "C.UTF-8",
}


class ExecutionLimitExceeded(Exception):
    def __init__(self, limit: str, value: int) -> None:
        super().__init__(f"{limit} exceeded (limit {value})")
        self.limit = limit
        self.value = value


class ExpansionError(Exception):
    pass


class RedirectionFailed(Exception):
    pass


class ExitSignal(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(status)
        self.status = status


class ReturnSignal(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(status)
        self.status = status


class LoopControl(Exception):
    def __init__(self, kind: str, levels: int) -> None:
        super().__init__(kind)
        self.kind = kind
        self.levels = levels


@dataclass
class ExecutionLimits:
    max_loop_iterations: int = 10_000
    max_command_count: int = 10_000
    max_output_bytes: Optional[int] = None
    loop_iterations: int = 0
    command_count: int = 0

    def tick_loop(self) -> None:
        self.loop_iterations += 1
        if self.loop_iterations > self.max_loop_iterations:
            raise ExecutionLimitExceeded("maxLoopIterations", self.max_loop_iterations)

    def tick_command(self) -> None:
        self.command_count += 1
        if self.command_count > self.max_command_count:
            raise ExecutionLimitExceeded("maxCommandCount", self.max_command_count)


@dataclass
class ShellState:
    cwd: str = VIRTUAL_ROOT
    variables: Dict[str, str] = field(default_factory=dict)
    exported: Set[str] = field(default_factory=set)
    functions: Dict[str, Command] = field(default_factory=dict)
    positional: List[str] = field(default_factory=list)
    options: Set[str] = field(default_factory=set)
    last_status: int = 0

    @classmethod
    def initial(cls, env: Optional[Mapping[str, str]] = None) -> "ShellState":
        variables = dict(DEFAULT_ENV)
        variables.update(env or {})
        variables["PWD"] = VIRTUAL_ROOT
        return cls(variables=variables, exported=set(variables))

    def copy(self) -> "ShellState":
        return ShellState(
            cwd=self.cwd,
            variables=dict(self.variables),
            exported=set(self.exported),
            functions=dict(self.functions),
            positional=list(self.positional),
            options=set(self.options),
            last_status=self.last_status,
        )

    def environment(self) -> Dict[str, str]:
        return {name: self.variables[name] for name in sorted(self.exported) if name in self.variables}


@dataclass
class RunOutcome:
    exit_code: int
    stdout: str
    stderr: str
    cwd: str
    limit_exceeded: Optional[ExecutionLimitExceeded] = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False


class ShellInterpreter:
    def __init__(
        self,
        fs: WorkspaceFS,
        *,
        env: Optional[Mapping[str, str]] = None,
        commands: Optional[Mapping[str, CommandFn]] = None,
    ) -> None:
        self.fs = fs
        self.state = ShellState.initial(env)
        self.commands: Dict[str, CommandFn] = dict(COMMANDS if commands is None else commands)
        self._limits = ExecutionLimits()
        self._condition_depth = 0
        self._loop_depth = 0
        self._function_depth = 0
        self._local_frames: List[Dict[str, Optional[str]]] = []
        self._cmdsub_status: Optional[int] = None
        self._builtins: Dict[str, Callable[[List[str], IO], int]] = {
            "cd": self._builtin_cd,
            "export": self._builtin_export,
            "unset": self._builtin_unset,
            "set": self._builtin_set,
            "exit": self._builtin_exit,
            "return": self._builtin_return,
            "break": self._builtin_break,
            "continue": self._builtin_continue,
            "read": self._builtin_read,
            "shift": self._builtin_shift,
            "local": self._builtin_local,
            "eval": self._builtin_eval,
            "source": self._builtin_source,
            ".": self._builtin_source,
            "bash": self._builtin_bash,
            "sh": self._builtin_bash,
            "type": self._builtin_type,
            "command": self._builtin_command,
        }

    @property
    def cwd(self) -> str:
        return self.state.cwd

    def run(self, script: str, *, cwd: Optional[str] = None, limits: Optional[ExecutionLimits] = None) -> RunOutcome:
        """Execute ``script`` to completion.

        ``cwd`` scopes the call to another directory; the session directory
        is restored afterwards. A tripped circuit breaker ends the script and
        is reported through ``RunOutcome.limit_exceeded``.
        """
        self._limits = limits or ExecutionLimits()
        stdout = OutputBuffer(self._limits.max_output_bytes)
        stderr = OutputBuffer(self._limits.max_output_bytes)
        io = IO(InputStream(""), stdout, stderr)
        saved_cwd = self.state.cwd
        if cwd is not None:
            self.state.cwd = normalize_virtual_path(cwd, saved_cwd)
        limit_hit: Optional[ExecutionLimitExceeded] = None
        self._condition_depth = self._loop_depth = self._function_depth = 0
        self._local_frames = []
        try:
            try:
                tree = parse(script)
            except ShellSyntaxError as exc:
                stderr.write(f"bash: {exc}\n")
                status = 2
            else:
                status = self._run_list(tree, io)
        except ExitSignal as exc:
            status = exc.status
        except ReturnSignal as exc:
            status = exc.status
        except ExecutionLimitExceeded as exc:
            logger.warning(f"Shell script aborted: {exc}")
            stderr.write(f"bash: {exc}\n")
            limit_hit = exc
            status = LIMIT_EXIT_CODE
        except RecursionError:
            stderr.write("bash: maximum recursion depth exceeded\n")
            status = 1
        final_cwd = self.state.cwd
        if cwd is not None:
            self.state.cwd = saved_cwd
        self.state.last_status = status
        return RunOutcome(
            exit_code=status,
            stdout=stdout.getvalue(),
            stderr=stderr.getvalue(),
            cwd=final_cwd,
            limit_exceeded=limit_hit,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
        )

    # ------------------------------------------------------------------
    # lists, pipelines and compound commands
    # ------------------------------------------------------------------

    def _run_list(self, node: CommandList, io: IO) -> int:
        status = 0
        for item in node.items:
            status = self._run_and_or(item, io)
            if status != 0 and "errexit" in self.state.options and self._condition_depth == 0:
                raise ExitSignal(status)
        return status

    def _run_condition(self, node: CommandList, io: IO) -> int:
        self._condition_depth += 1
        try:
            return self._run_list(node, io)
        finally:
            self._condition_depth -= 1

    def _run_and_or(self, node: AndOr, io: IO) -> int:
        chain: List[Tuple[Optional[str], Pipeline]] = [(None, node.first)] + list(node.rest)
        status = 0
        for index, (op, pipeline) in enumerate(chain):
            if op == "&&" and status != 0:
                continue
            if op == "||" and status == 0:
                continue
            status = self._run_pipeline(pipeline, io, condition=index < len(chain) - 1)
        return status

    def _run_pipeline(self, node: Pipeline, io: IO, condition: bool = False) -> int:
        condition = condition or node.negated
        if condition:
            self._condition_depth += 1
        try:
            if len(node.commands) == 1:
                status = self._run_command(node.commands[0], io)
            else:
                status = self._run_multi(node.commands, io)
        finally:
            if condition:
                self._condition_depth -= 1
        if node.negated:
            status = 0 if status != 0 else 1
        self.state.last_status = status
        return status

    def _run_multi(self, commands: List[Command], io: IO) -> int:
        stdin = io.stdin
        statuses: List[int] = []
        for index, cmd in enumerate(commands):
            last = index == len(commands) - 1
            out = io.stdout if last else OutputBuffer(self._limits.max_output_bytes)
            saved = self.state
            self.state = saved.copy()
            try:
                statuses.append(self._run_command(cmd, IO(stdin, out, io.stderr)))
            except ExitSignal as exc:
                statuses.append(exc.status)
            finally:
                self.state = saved
            if not last:
                stdin = InputStream(out.getvalue())
        if "pipefail" in self.state.options:
            return next((s for s in reversed(statuses) if s != 0), 0)
        return statuses[-1]

    def _run_command(self, cmd: Command, io: IO) -> int:
        if isinstance(cmd, SimpleCommand):
            return self._run_simple(cmd, io)
        if isinstance(cmd, FunctionDef):
            self.state.functions[cmd.name] = cmd.body
            return 0
        try:
            rio, sinks = self._apply_redirects(cmd.redirects, io)
        except RedirectionFailed as exc:
            io.stderr.write(f"bash: {exc}\n")
            return 1
        try:
            if isinstance(cmd, IfClause):
                return self._run_if(cmd, rio)
            if isinstance(cmd, LoopClause):
                return self._run_loop(cmd, rio)
            if isinstance(cmd, ForClause):
                return self._run_for(cmd, rio)
            if isinstance(cmd, Group):
                return self._run_group(cmd, rio)
            raise TypeError(f"unknown command node {type(cmd).__name__}")
        finally:
            self._flush(sinks, io)

    def _run_if(self, cmd: IfClause, io: IO) -> int:
        for condition, body in cmd.branches:
            if self._run_condition(condition, io) == 0:
                return self._run_list(body, io)
        if cmd.else_body is not None:
            return self._run_list(cmd.else_body, io)
        return 0

    def _run_loop(self, cmd: LoopClause, io: IO) -> int:
        status = 0
        self._loop_depth += 1
        try:
            while True:
                self._limits.tick_loop()
                passed = self._run_condition(cmd.condition, io) == 0
                if passed == cmd.until:
                    break
                try:
                    status = self._run_list(cmd.body, io)
                except LoopControl as ctl:
                    if ctl.levels > 1:
                        ctl.levels -= 1
                        raise
                    if ctl.kind == "break":
                        break
        finally:
            self._loop_depth -= 1
        return status

    def _run_for(self, cmd: ForClause, io: IO) -> int:
        if cmd.items is None:
            items = list(self.state.positional)
        else:
            items = []
            try:
                for word in cmd.items:
                    items.extend(self._expand_word(word, io))
            except (ExpansionError, arith.ShellArithmeticError) as exc:
                io.stderr.write(f"bash: {exc}\n")
                return 1
        status = 0
        self._loop_depth += 1
        try:
            for item in items:
                self._limits.tick_loop()
                self.state.variables[cmd.variable] = item
                try:
                    status = self._run_list(cmd.body, io)
                except LoopControl as ctl:
                    if ctl.levels > 1:
                        ctl.levels -= 1
                        raise
                    if ctl.kind == "break":
                        break
        finally:
            self._loop_depth -= 1
        return status

    def _run_group(self, cmd: Group, io: IO) -> int:
        if not cmd.subshell:
            return self._run_list(cmd.body, io)
        return self._run_subshell(lambda: self._run_list(cmd.body, io))

    def _run_subshell(self, fn: Callable[[], int]) -> int:
        saved = self.state
        self.state = saved.copy()
        try:
            return fn()
        except ExitSignal as exc:
            return exc.status
        finally:
            self.state = saved

    # ------------------------------------------------------------------
    # simple commands
    # ------------------------------------------------------------------

    def _run_simple(self, cmd: SimpleCommand, io: IO) -> int:
        self._limits.tick_command()
        self._cmdsub_status = None
        try:
            argv: List[str] = []
            for word in cmd.words:
                argv.extend(self._expand_word(word, io))
            assignments = [(name, self._expand_single(value, io)) for name, value in cmd.assignments]
        except (ExpansionError, arith.ShellArithmeticError) as exc:
            io.stderr.write(f"bash: {exc}\n")
            return 1

        if not argv:
            for name, value in assignments:
                self._set_var(name, value)
            status = self._cmdsub_status or 0
            if cmd.redirects:
                try:
                    _, sinks = self._apply_redirects(cmd.redirects, io)
                except RedirectionFailed as exc:
                    io.stderr.write(f"bash: {exc}\n")
                    return 1
                self._flush(sinks, io)
            return status

        try:
            rio, sinks = self._apply_redirects(cmd.redirects, io)
        except RedirectionFailed as exc:
            io.stderr.write(f"bash: {exc}\n")
            return 1
        try:
            return self._invoke(argv, assignments, rio)
        finally:
            self._flush(sinks, io)

    def _invoke(self, argv: List[str], assignments: List[Tuple[str, str]], io: IO) -> int:
        name, args = argv[0], argv[1:]
        if name in self.state.functions:
            return self._with_temp_vars(assignments, lambda: self._call_function(name, args, io))
        builtin = self._builtins.get(name)
        if builtin is not None:
            return self._with_temp_vars(assignments, lambda: builtin(args, io))
        fn = self.commands.get(name)
        if fn is None:
            if "/" in name:
                return self._run_script_file(name, args, io)
            io.stderr.write(f"bash: {name}: command not found\n")
            return 127
        env = self.state.environment()
        env.update(assignments)
        ctx = CommandContext(self, name, io, env)
        try:
            return fn(ctx, args)
        except UsageError as exc:
            io.stderr.write(f"{name}: {exc}\n")
            return 2
        except SandboxError as exc:
            io.stderr.write(f"{name}: {exc.message}\n")
            return 1
        except (ExecutionLimitExceeded, ExitSignal, ReturnSignal, LoopControl):
            raise
        except Exception as exc:
            logger.warning(f"Shell command {name} failed: {type(exc).__name__}: {exc}")
            io.stderr.write(f"{name}: {str(exc) or type(exc).__name__}\n")
            return 1

    def _with_temp_vars(self, assignments: List[Tuple[str, str]], fn: Callable[[], int]) -> int:
        if not assignments:
            return fn()
        saved = {name: self.state.variables.get(name) for name, _ in assignments}
        for name, value in assignments:
            self.state.variables[name] = value
        try:
            return fn()
        finally:
            for name, value in saved.items():
                if value is None:
                    self.state.variables.pop(name, None)
                else:
                    self.state.variables[name] = value

    def _call_function(self, name: str, args: List[str], io: IO) -> int:
        if self._function_depth >= MAX_FUNCTION_DEPTH:
            io.stderr.write(f"bash: {name}: maximum function nesting level exceeded ({MAX_FUNCTION_DEPTH})\n")
            return 1
        saved_positional = self.state.positional
        self.state.positional = list(args)
        self._function_depth += 1
        self._local_frames.append({})
        try:
            return self._run_command(self.state.functions[name], io)
        except ReturnSignal as ret:
            return ret.status
        finally:
            for var, value in self._local_frames.pop().items():
                if value is None:
                    self.state.variables.pop(var, None)
                else:
                    self.state.variables[var] = value
            self._function_depth -= 1
            self.state.positional = saved_positional

    def _run_script_file(self, path: str, args: List[str], io: IO) -> int:
        try:
            source = self.fs.read_text(path, self.state.cwd)
        except SandboxError as exc:
            io.stderr.write(f"bash: {path}: {exc.message}\n")
            return 127
        return self._run_source_in_subshell(source, args, io)

    def _run_source_in_subshell(self, source: str, args: List[str], io: IO) -> int:
        try:
            tree = parse(source)
        except ShellSyntaxError as exc:
            io.stderr.write(f"bash: {exc}\n")
            return 2

        def body() -> int:
            self.state.positional = list(args)
            try:
                return self._run_list(tree, io)
            except ReturnSignal as ret:
                return ret.status

        return self._run_subshell(body)

    # ------------------------------------------------------------------
    # redirections
    # ------------------------------------------------------------------

    def _apply_redirects(self, redirects: List[Redirect], io: IO) -> Tuple[IO, List[OutputBuffer]]:
        stdin, stdout, stderr = io.stdin, io.stdout, io.stderr
        sinks: List[OutputBuffer] = []
        cwd = self.state.cwd
        for redirect in redirects:
            if redirect.heredoc is not None:
                heredoc = redirect.heredoc
                if heredoc.expand and heredoc.segments is not None:
                    try:
                        text = self._expand_segments(heredoc.segments, io)
                    except (ExpansionError, arith.ShellArithmeticError) as exc:
                        raise RedirectionFailed(str(exc)) from None
                else:
                    text = heredoc.body
                stdin = InputStream(text)
                continue
            try:
                target = self._expand_single(redirect.target, io)
            except (ExpansionError, arith.ShellArithmeticError) as exc:
                raise RedirectionFailed(str(exc)) from None
            op = redirect.op
            if op in (">&", "<&") and (target.isdigit() or target == "-"):
                if target == "-":
                    replacement: OutputBuffer = NullSink()
                elif target == "1":
                    replacement = stdout
                elif target == "2":
                    replacement = stderr
                else:
                    raise RedirectionFailed(f"{target}: Bad file descriptor")
                if redirect.fd == 2:
                    stderr = replacement
                elif redirect.fd == 1:
                    stdout = replacement
                continue
            if op in ("<", "<&"):
                if target == "/dev/null":
                    stdin = InputStream("")
                    continue
                try:
                    stdin = InputStream(self.fs.read_text(target, cwd))
                except SandboxError as exc:
                    raise RedirectionFailed(f"{target}: {exc.message}") from None
                continue
            sink = self._open_sink(target, op in (">>", "&>>"), stdout, stderr)
            sinks.append(sink)
            if redirect.fd == BOTH_STREAMS_FD or op == ">&":
                stdout = stderr = sink
            elif redirect.fd == 2:
                stderr = sink
            elif redirect.fd == 1:
                stdout = sink
        return IO(stdin, stdout, stderr), sinks

    def _open_sink(self, target: str, append: bool, stdout: OutputBuffer, stderr: OutputBuffer) -> OutputBuffer:
        if target == "/dev/null":
            return NullSink()
        if target == "/dev/stdout":
            return stdout
        if target == "/dev/stderr":
            return stderr
        try:
            return FileSink(self.fs, target, self.state.cwd, append)
        except SandboxError as exc:
            raise RedirectionFailed(f"{target}: {exc.message}") from None

    def _flush(self, sinks: List[OutputBuffer], io: IO) -> None:
        for sink in sinks:
            try:
                sink.flush()
            except SandboxError as exc:
                io.stderr.write(f"bash: {exc.message}\n")

    # ------------------------------------------------------------------
    # expansion
    # ------------------------------------------------------------------

    def _expand_word(self, word: Word, io: IO) -> List[str]:
        """Expand one word into fields: parameters, substitutions, splitting, globbing."""
        fields: List[List[Tuple[str, bool]]] = []
        current: List[Tuple[str, bool]] = []

        def finish() -> None:
            nonlocal current
            if current:
                fields.append(current)
            current = []

        for seg in word.segments:
            if isinstance(seg, Literal):
                current.append((seg.text, seg.quoted))
                continue
            if isinstance(seg, Param) and seg.name == "@" and seg.op is None and seg.quoted:
                for index, value in enumerate(self.state.positional):
                    if index > 0:
                        finish()
                    current.append((value, True))
                continue
            text = self._expand_segment(seg, io)
            if seg.quoted:
                current.append((text, True))
                continue
            if not text:
                continue
            pieces = text.split()
            if text[0] in IFS_WHITESPACE:
                finish()
            for index, piece in enumerate(pieces):
                if index > 0:
                    finish()
                current.append((piece, False))
            if text[-1] in IFS_WHITESPACE and pieces:
                finish()
        finish()

        result: List[str] = []
        for parts in fields:
            text = "".join(t for t, _ in parts)
            if any(not quoted and has_glob(t) for t, quoted in parts):
                pattern = "".join(t if not quoted else glob_escape(t) for t, quoted in parts)
                matches = glob_paths(self.fs, pattern, self.state.cwd)
                if matches:
                    result.extend(matches)
                    continue
            result.append(text)
        return result

    def _expand_single(self, word: Word, io: IO) -> str:
        return self._expand_segments(word.segments, io)

    def _expand_segments(self, segments: List[Segment], io: IO) -> str:
        return "".join(self._expand_segment(seg, io) for seg in segments)

    def _expand_segment(self, seg: Segment, io: IO) -> str:
        if isinstance(seg, Literal):
            return seg.text
        if isinstance(seg, Param):
            return self._expand_param(seg, io)
        if isinstance(seg, CommandSub):
            return self._command_substitution(seg.source, io)
        if isinstance(seg, Arith):
            return str(self._arith(seg.source, io))
        raise TypeError(f"unknown segment {type(seg).__name__}")

    def _lookup(self, name: str) -> Optional[str]:
        positional = self.state.positional
        if name == "?":
            return str(self.state.last_status)
        if name == "#":
            return str(len(positional))
        if name in ("@", "*"):
            return " ".join(positional)
        if name == "$":
            return "1"
        if name == "!":
            return ""
        if name == "-":
            return "e" if "errexit" in self.state.options else ""
        if name == "0":
            return "bash"
        if name.isdigit():
            index = int(name)
            return positional[index - 1] if index <= len(positional) else None
        if name == "RANDOM":
            return str(random.randint(0, 32767))
        return self.state.variables.get(name)

    def _expand_param(self, seg: Param, io: IO) -> str:
        value = self._lookup(seg.name)
        op = seg.op
        if op is None:
            return value or ""
        if op == "length":
            return str(len(value or ""))
        is_unset = value is None
        is_null = is_unset or value == ""
        missing = is_null if op.startswith(":") else is_unset
        if op in (":-", "-"):
            return self._expand_single(seg.arg, io) if missing else value
        if op in (":=", "="):
            if missing:
                value = self._expand_single(seg.arg, io)
                self._set_var(seg.name, value)
            return value
        if op in (":+", "+"):
            return "" if missing else self._expand_single(seg.arg, io)
        if op in (":?", "?"):
            if missing:
                message = self._expand_single(seg.arg, io) or "parameter null or not set"
                raise ExpansionError(f"{seg.name}: {message}")
            return value
        text = value or ""
        argument = self._expand_single(seg.arg, io)
        if op in ("#", "##", "%", "%%"):
            return _strip_pattern(text, argument, op)
        if op in ("/", "//"):
            pattern, _, replacement = argument.partition("/")
            if not pattern:
                return text
            regex = glob_to_regex(pattern)
            return re.sub(regex, lambda _: replacement, text, count=0 if op == "//" else 1)
        raise ExpansionError(f"${{{seg.name}{op}}}: bad substitution")

    def _command_substitution(self, source: str, io: IO) -> str:
        out = OutputBuffer(self._limits.max_output_bytes)
        try:
            tree = parse(source)
        except ShellSyntaxError as exc:
            raise ExpansionError(str(exc)) from None
        status = self._run_subshell(lambda: self._run_list(tree, IO(InputStream(""), out, io.stderr)))
        self._cmdsub_status = status
        self.state.last_status = status
        return out.getvalue().rstrip("\n")

    def _arith(self, source: str, io: IO) -> int:
        text = self._expand_segments(lex_template(source), io)
        return arith.evaluate(text, self.state.variables.get)

    def _set_var(self, name: str, value: str) -> None:
        self.state.variables[name] = value

    # ------------------------------------------------------------------
    # builtins that change shell state
    # ------------------------------------------------------------------

    def _builtin_cd(self, args: List[str], io: IO) -> int:
        target = args[0] if args else self.state.variables.get("HOME", VIRTUAL_ROOT)
        if target == "-":
            target = self.state.variables.get("OLDPWD", self.state.cwd)
        try:
            is_dir = self.fs.is_dir(target, self.state.cwd)
        except SandboxError as exc:
            io.stderr.write(f"bash: cd: {target}: {exc.message}\n")
            return 1
        if not is_dir:
            io.stderr.write(f"bash: cd: {target}: No such file or directory\n")
            return 1
        self.state.variables["OLDPWD"] = self.state.cwd
        self.state.cwd = normalize_virtual_path(target, self.state.cwd)
        self.state.variables["PWD"] = self.state.cwd
        return 0

    def _builtin_export(self, args: List[str], io: IO) -> int:
        names = [arg for arg in args if arg != "-p"]
        if not names:
            for name, value in self.state.environment().items():
                io.stdout.write(f'declare -x {name}="{value}"\n')
            return 0
        for arg in names:
            name, sep, value = arg.partition("=")
            if sep:
                self.state.variables[name] = value
            self.state.exported.add(name)
        return 0

    def _builtin_unset(self, args: List[str], io: IO) -> int:
        functions = "-f" in args
        for name in args:
            if name in ("-f", "-v"):
                continue
            if functions:
                self.state.functions.pop(name, None)
            else:
                self.state.variables.pop(name, None)
                self.state.exported.discard(name)
        return 0

    def _builtin_set(self, args: List[str], io: IO) -> int:
        if not args:
            for name in sorted(self.state.variables):
                io.stdout.write(f"{name}={self.state.variables[name]}\n")
            return 0
        flags = {"e": "errexit", "u": "nounset", "x": "xtrace"}
        i = 0
        while i < len(args):
            arg = args[i]
            if arg == "--":
                self.state.positional = args[i + 1:]
                return 0
            if arg in ("-o", "+o"):
                i += 1
                if i < len(args):
                    if arg == "-o":
                        self.state.options.add(args[i])
                    else:
                        self.state.options.discard(args[i])
            elif arg[:1] in ("-", "+") and len(arg) > 1:
                for ch in arg[1:]:
                    option = flags.get(ch, ch)
                    if arg[0] == "-":
                        self.state.options.add(option)
                    else:
                        self.state.options.discard(option)
            else:
                self.state.positional = args[i:]
                return 0
            i += 1
        return 0

    def _builtin_exit(self, args: List[str], io: IO) -> int:
        if not args:
            raise ExitSignal(self.state.last_status)
        try:
            status = int(args[0]) & 0xFF
        except ValueError:
            io.stderr.write(f"bash: exit: {args[0]}: numeric argument required\n")
            raise ExitSignal(2) from None
        raise ExitSignal(status)

    def _builtin_return(self, args: List[str], io: IO) -> int:
        if self._function_depth == 0:
            io.stderr.write("bash: return: can only `return' from a function or sourced script\n")
            return 1
        try:
            status = int(args[0]) & 0xFF if args else self.state.last_status
        except ValueError:
            io.stderr.write(f"bash: return: {args[0]}: numeric argument required\n")
            status = 2
        raise ReturnSignal(status)

    def _loop_control(self, kind: str, args: List[str], io: IO) -> int:
        if self._loop_depth == 0:
            io.stderr.write(f"bash: {kind}: only meaningful in a `for', `while', or `until' loop\n")
            return 0
        try:
            levels = int(args[0]) if args else 1
        except ValueError:
            io.stderr.write(f"bash: {kind}: {args[0]}: numeric argument required\n")
            return 1
        raise LoopControl(kind, max(1, min(levels, self._loop_depth)))

    def _builtin_break(self, args: List[str], io: IO) -> int:
        return self._loop_control("break", args, io)

    def _builtin_continue(self, args: List[str], io: IO) -> int:
        return self._loop_control("continue", args, io)

    def _builtin_read(self, args: List[str], io: IO) -> int:
        names: List[str] = []
        raw = False
        i = 0
        while i < len(args):
            arg = args[i]
            if arg == "-r":
                raw = True
            elif arg == "-p":
                i += 1
            else:
                names.append(arg)
            i += 1
        line = io.stdin.readline()
        if line is None:
            return 1
        line = line[:-1] if line.endswith("\n") else line
        if not raw:
            line = line.replace("\\", "")
        names = names or ["REPLY"]
        if names == ["REPLY"]:
            self.state.variables["REPLY"] = line
            return 0
        fields = line.split(None, len(names) - 1)
        for index, name in enumerate(names):
            self.state.variables[name] = fields[index].strip() if index < len(fields) else ""
        return 0

    def _builtin_shift(self, args: List[str], io: IO) -> int:
        try:
            count = int(args[0]) if args else 1
        except ValueError:
            io.stderr.write(f"bash: shift: {args[0]}: numeric argument required\n")
            return 1
        if count > len(self.state.positional):
            return 1
        self.state.positional = self.state.positional[count:]
        return 0

    def _builtin_local(self, args: List[str], io: IO) -> int:
        if not self._local_frames:
            io.stderr.write("bash: local: can only be used in a function\n")
            return 1
        frame = self._local_frames[-1]
        for arg in args:
            name, sep, value = arg.partition("=")
            if name not in frame:
                frame[name] = self.state.variables.get(name)
            self.state.variables[name] = value if sep else self.state.variables.get(name, "")
        return 0

    def _builtin_eval(self, args: List[str], io: IO) -> int:
        try:
            tree = parse(" ".join(args))
        except ShellSyntaxError as exc:
            io.stderr.write(f"bash: eval: {exc}\n")
            return 2
        return self._run_list(tree, io)

    def _builtin_source(self, args: List[str], io: IO) -> int:
        if not args:
            io.stderr.write("bash: source: filename argument required\n")
            return 2
        try:
            source = self.fs.read_text(args[0], self.state.cwd)
            tree = parse(source)
        except SandboxError as exc:
            io.stderr.write(f"bash: {args[0]}: {exc.message}\n")
            return 1
        except ShellSyntaxError as exc:
            io.stderr.write(f"bash: {args[0]}: {exc}\n")
            return 2
        saved = self.state.positional
        if len(args) > 1:
            self.state.positional = args[1:]
        self._function_depth += 1
        try:
            return self._run_list(tree, io)
        except ReturnSignal as ret:
            return ret.status
        finally:
            self._function_depth -= 1
            self.state.positional = saved

    def _builtin_bash(self, args: List[str], io: IO) -> int:
        if not args:
            return self._run_source_in_subshell(io.stdin.read(), [], io)
        if args[0] == "-c":
            if len(args) < 2:
                io.stderr.write("bash: -c: option requires an argument\n")
                return 2
            return self._run_source_in_subshell(args[1], args[3:], io)
        return self._run_script_file(args[0], args[1:], io)

    def _builtin_type(self, args: List[str], io: IO) -> int:
        status = 0
        for name in args:
            if name in self.state.functions:
                io.stdout.write(f"{name} is a function\n")
            elif name in self._builtins or name in self.commands:
                io.stdout.write(f"{name} is a shell builtin\n")
            else:
                io.stderr.write(f"bash: type: {name}: not found\n")
                status = 1
        return status

    def _builtin_command(self, args: List[str], io: IO) -> int:
        if args and args[0] == "-v":
            names = args[1:]
            found = [n for n in names if n in self._builtins or n in self.commands or n in self.state.functions]
            for name in found:
                io.stdout.write(f"{name}\n")
            return 0 if names and len(found) == len(names) else 1
        if not args:
            return 0
        return self._invoke(args, [], io)


def _strip_pattern(text: str, pattern: str, op: str) -> str:
    if op == "#":
        for i in range(len(text) + 1):
            if fnmatchcase(text[:i], pattern):
                return text[i:]
    elif op == "##":
        for i in range(len(text), -1, -1):
            if fnmatchcase(text[:i], pattern):
                return text[i:]
    elif op == "%":
        for i in range(len(text), -1, -1):
            if fnmatchcase(text[i:], pattern):
                return text[:i]
    elif op == "%%":
        for i in range(len(text) + 1):
            if fnmatchcase(text[i:], pattern):
                return text[:i]
    return text
