from __future__ import annotations

import posixpath
import re
from typing import List, Optional

from protocol.errors import SandboxError
from shellemu.commands.registry import CommandContext, UsageError, command, getopt
from shellemu.escapes import decode_escapes

PRINTF_SPEC_RE = re.compile(r"%([-+ #0]*)(\d+|\*)?(?:\.(\d+|\*))?([sdiouxXfFeEgGcb%])")


@command("true", ":")
def true_cmd(ctx: CommandContext, args: List[str]) -> int:
    return 0


@command("false")
def false_cmd(ctx: CommandContext, args: List[str]) -> int:
    return 1


@command("echo")
def echo(ctx: CommandContext, args: List[str]) -> int:
    newline = True
    interpret = False
    while args and re.fullmatch(r"-[neE]+", args[0]):
        for flag in args[0][1:]:
            if flag == "n":
                newline = False
            elif flag == "e":
                interpret = True
            else:
                interpret = False
        args = args[1:]
    text = " ".join(args)
    if interpret:
        text, stopped = decode_escapes(text)
        if stopped:
            newline = False
    ctx.write(text + ("\n" if newline else ""))
    return 0


MAX_PRINTF_WIDTH = 65536


class _Conversions:
    """Argument conversion for one printf call; a bad argument fails the call."""

    def __init__(self, ctx: CommandContext) -> None:
        self.ctx = ctx
        self.failed = False

    def fail(self, message: str) -> None:
        self.ctx.error(message)
        self.failed = True

    def number(self, arg: str) -> int:
        if not arg:
            return 0
        if arg[0] in "'\"" and len(arg) > 1:
            return ord(arg[1])
        try:
            return int(arg, 0) if arg.lower().startswith(("0x", "-0x")) else int(arg)
        except ValueError:
            self.fail(f"{arg}: invalid number")
            return 0

    def real(self, arg: str) -> float:
        try:
            return float(arg) if arg else 0.0
        except ValueError:
            self.fail(f"{arg}: invalid number")
            return 0.0

    def width(self, raw: Optional[str], args: List[str]) -> Optional[str]:
        if raw is None:
            return None
        if raw == "*":
            raw = args.pop(0) if args else ""
        value = self.number(raw)
        if abs(value) > MAX_PRINTF_WIDTH:
            self.fail(f"{value}: field width too large")
            return None
        return str(value)


def _format_once(fmt: str, args: List[str], conversions: _Conversions) -> str:
    out: List[str] = []
    pos = 0
    for match in PRINTF_SPEC_RE.finditer(fmt):
        out.append(decode_escapes(fmt[pos:match.start()])[0])
        pos = match.end()
        flags, width, precision, conv = match.groups()
        if conv == "%":
            out.append("%")
            continue
        width = conversions.width(width, args)
        precision = conversions.width(precision, args)
        if precision is not None and precision.startswith("-"):
            precision = None
        arg = args.pop(0) if args else ""
        spec = "%" + flags + (width or "") + (f".{precision}" if precision is not None else "")
        if conv in "di":
            out.append((spec + "d") % conversions.number(arg))
        elif conv in "ouxX":
            out.append((spec + conv) % conversions.number(arg))
        elif conv in "fFeEgG":
            out.append((spec + conv) % conversions.real(arg))
        elif conv == "c":
            out.append((spec + "s") % arg[:1])
        elif conv == "b":
            out.append((spec + "s") % decode_escapes(arg)[0])
        else:
            out.append((spec + "s") % arg)
    out.append(decode_escapes(fmt[pos:])[0])
    return "".join(out)


@command("printf")
def printf(ctx: CommandContext, args: List[str]) -> int:
    if args and args[0] == "--":
        args = args[1:]
    if not args:
        raise UsageError("usage: printf format [arguments]")
    fmt, rest = args[0], list(args[1:])
    conversions = _Conversions(ctx)
    consumes = any(m.group(4) != "%" for m in PRINTF_SPEC_RE.finditer(fmt))
    ctx.write(_format_once(fmt, rest, conversions))
    while rest and consumes:
        before = len(rest)
        ctx.write(_format_once(fmt, rest, conversions))
        if len(rest) == before:
            break
    return 1 if conversions.failed else 0


@command("pwd")
def pwd(ctx: CommandContext, args: List[str]) -> int:
    ctx.write(ctx.cwd + "\n")
    return 0


@command("env", "printenv")
def env(ctx: CommandContext, args: List[str]) -> int:
    if ctx.name == "printenv" and args:
        status = 0
        for name in args:
            if name in ctx.env:
                ctx.write(ctx.env[name] + "\n")
            else:
                status = 1
        return status
    for name, value in sorted(ctx.env.items()):
        ctx.write(f"{name}={value}\n")
    return 0


@command("basename")
def basename(ctx: CommandContext, args: List[str]) -> int:
    if not args:
        raise UsageError("missing operand")
    name = args[0].rstrip("/")
    base = posixpath.basename(name) if name else "/"
    if len(args) > 1 and base != args[1] and base.endswith(args[1]):
        base = base[: -len(args[1])]
    ctx.write(base + "\n")
    return 0


@command("dirname")
def dirname(ctx: CommandContext, args: List[str]) -> int:
    if not args:
        raise UsageError("missing operand")
    for arg in args:
        stripped = arg.rstrip("/") or "/"
        parent = posixpath.dirname(stripped)
        if parent != "/":
            parent = parent.rstrip("/")
        ctx.write((parent or ".") + "\n")
    return 0


@command("seq")
def seq(ctx: CommandContext, args: List[str]) -> int:
    opts, operands = getopt(args, "s:w", allow_numbers=True)
    if not 1 <= len(operands) <= 3:
        raise UsageError("missing operand")
    try:
        numbers = [int(x) for x in operands]
    except ValueError:
        raise UsageError(f"invalid argument: {' '.join(operands)}") from None
    first, step, last = 1, 1, numbers[-1]
    if len(numbers) >= 2:
        first = numbers[0]
    if len(numbers) == 3:
        step = numbers[1]
    if step == 0:
        raise UsageError("invalid Zero increment value: '0'")
    values = list(range(first, last + (1 if step > 0 else -1), step))
    width = max((len(str(v)) for v in values), default=0) if opts.get("w") else 0
    separator = opts.get("s", "\n")
    if values:
        ctx.write(str(separator).join(str(v).zfill(width) for v in values) + "\n")
    return 0


@command("sleep")
def sleep(ctx: CommandContext, args: List[str]) -> int:
    # No-op; the operand is only validated.
    if not args:
        raise UsageError("missing operand")
    try:
        float(args[0].rstrip("smhd"))
    except ValueError:
        raise UsageError(f"invalid time interval '{args[0]}'") from None
    return 0


# ---------------------------------------------------------------------------
# test / [
# ---------------------------------------------------------------------------

UNARY_FILE_TESTS = frozenset("efdsrwxLhnz")
INT_OPS = {
    "-eq": lambda a, b: a == b,
    "-ne": lambda a, b: a != b,
    "-lt": lambda a, b: a < b,
    "-le": lambda a, b: a <= b,
    "-gt": lambda a, b: a > b,
    "-ge": lambda a, b: a >= b,
}


class _TestParser:
    def __init__(self, ctx: CommandContext, args: List[str]) -> None:
        self.ctx = ctx
        self.args = args
        self.pos = 0

    def _peek(self, offset: int = 0):
        index = self.pos + offset
        return self.args[index] if index < len(self.args) else None

    def parse(self) -> bool:
        if not self.args:
            return False
        value = self._or()
        if self.pos != len(self.args):
            raise UsageError(f"{self.args[self.pos]}: unexpected operator")
        return value

    def _or(self) -> bool:
        value = self._and()
        while self._peek() == "-o":
            self.pos += 1
            rhs = self._and()
            value = value or rhs
        return value

    def _and(self) -> bool:
        value = self._not()
        while self._peek() == "-a":
            self.pos += 1
            rhs = self._not()
            value = value and rhs
        return value

    def _not(self) -> bool:
        if self._peek() == "!" and self._peek(1) is not None:
            self.pos += 1
            return not self._not()
        return self._primary()

    def _primary(self) -> bool:
        token = self._peek()
        if token is None:
            raise UsageError("argument expected")
        if token == "(":
            self.pos += 1
            value = self._or()
            if self._peek() != ")":
                raise UsageError("')' expected")
            self.pos += 1
            return value
        op = self._peek(1)
        if op in ("=", "==", "!=", "<", ">") or op in INT_OPS:
            rhs = self._peek(2)
            if rhs is not None:
                self.pos += 3
                return self._binary(token, op, rhs)
        if len(token) == 2 and token[0] == "-" and token[1] in UNARY_FILE_TESTS and op is not None:
            self.pos += 2
            return self._unary(token[1], op)
        self.pos += 1
        return token != ""

    def _binary(self, lhs: str, op: str, rhs: str) -> bool:
        if op in ("=", "=="):
            return lhs == rhs
        if op == "!=":
            return lhs != rhs
        if op == "<":
            return lhs < rhs
        if op == ">":
            return lhs > rhs
        try:
            return INT_OPS[op](int(lhs), int(rhs))
        except ValueError:
            bad = lhs if not re.fullmatch(r"\s*-?\d+\s*", lhs) else rhs
            raise UsageError(f"{bad}: integer expression expected") from None

    def _unary(self, flag: str, operand: str) -> bool:
        if flag == "z":
            return operand == ""
        if flag == "n":
            return operand != ""
        fs, cwd = self.ctx.fs, self.ctx.cwd
        try:
            if flag in "Lh":
                _, host = fs.resolve_link(operand, cwd)
                return host.is_symlink()
            host = fs.resolve(operand, cwd)
        except SandboxError:
            return False
        if flag == "e":
            return host.exists()
        if flag == "f":
            return host.is_file()
        if flag == "d":
            return host.is_dir()
        if flag == "s":
            return host.exists() and host.stat().st_size > 0
        if flag == "r":
            return host.exists()
        if flag == "w":
            return host.exists()
        if flag == "x":
            return host.is_dir()
        return False


@command("test", "[")
def test_cmd(ctx: CommandContext, args: List[str]) -> int:
    if ctx.name == "[":
        if not args or args[-1] != "]":
            ctx.error("missing `]'")
            return 2
        args = args[:-1]
    try:
        return 0 if _TestParser(ctx, args).parse() else 1
    except UsageError as exc:
        ctx.error(str(exc))
        return 2
