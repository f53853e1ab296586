"""Line-oriented text filters: grep, sort, uniq, cut, tr, sed, rev."""
from __future__ import annotations

import re
from typing import Callable, List, Optional, Tuple

from protocol.errors import SandboxError
from shellemu.commands.registry import CommandContext, UsageError, command, getopt, join_lines, split_lines
from shellemu.escapes import decode_escapes

BRE_SPECIALS = {"+", "?", "(", ")", "{", "}", "|"}


def bre_to_python(pattern: str) -> str:
    """Translate a POSIX basic regular expression into Python syntax.

    In a BRE the characters ``+ ? ( ) { } |`` are literal unless escaped;
    Python gives them their special meaning unescaped.
    """
    out: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            nxt = pattern[i + 1]
            out.append(nxt if nxt in BRE_SPECIALS else "\\" + nxt)
            i += 2
            continue
        if ch in BRE_SPECIALS:
            out.append("\\" + ch)
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def compile_pattern(pattern: str, *, extended: bool, fixed: bool = False, ignore_case: bool = False,
                    word: bool = False) -> "re.Pattern[str]":
    if fixed:
        source = re.escape(pattern)
    elif extended:
        source = pattern
    else:
        source = bre_to_python(pattern)
    if word:
        source = rf"(?<!\w)(?:{source})(?!\w)"
    try:
        return re.compile(source, re.IGNORECASE if ignore_case else 0)
    except re.error as exc:
        raise UsageError(f"invalid regular expression: {exc}") from None


# ---------------------------------------------------------------------------
# grep
# ---------------------------------------------------------------------------


def _grep_files(ctx: CommandContext, paths: List[str], recursive: bool) -> List[str]:
    if not recursive:
        return paths
    expanded: List[str] = []
    for path in paths or ["."]:
        if not ctx.fs.is_dir(path, ctx.cwd):
            expanded.append(path)
            continue
        prefix = ctx.fs.virtual_path(path, ctx.cwd)
        for dirpath, _, filenames in ctx.fs.walk(path, ctx.cwd):
            for filename in filenames:
                full = f"{dirpath}/{filename}"
                expanded.append(path.rstrip("/") + full[len(prefix):] if path != "." else "." + full[len(prefix):])
    return expanded


@command("grep", "egrep", "fgrep")
def grep(ctx: CommandContext, args: List[str]) -> int:
    opts, operands = getopt(args, "ivnclLrRqsEFowhHe:xm:")
    patterns: List[str] = []
    if "e" in opts:
        patterns.append(str(opts["e"]))
    elif operands:
        patterns.append(operands.pop(0))
    else:
        raise UsageError("usage: grep [OPTION]... PATTERNS [FILE]...")
    extended = bool(opts.get("E")) or ctx.name == "egrep"
    fixed = bool(opts.get("F")) or ctx.name == "fgrep"
    regexes = [
        compile_pattern(p, extended=extended, fixed=fixed, ignore_case=bool(opts.get("i")), word=bool(opts.get("w")))
        for p in patterns[0].split("\n")
    ]
    invert = bool(opts.get("v"))
    max_count = int(opts["m"]) if "m" in opts else None
    recursive = bool(opts.get("r") or opts.get("R"))
    files = _grep_files(ctx, operands, recursive)
    show_names = (len(files) > 1 or recursive) and not opts.get("h") or bool(opts.get("H"))
    matched_any = False
    status = 0

    def matches(line: str) -> List["re.Match[str]"]:
        found = []
        for regex in regexes:
            if opts.get("x"):
                m = regex.fullmatch(line)
                if m:
                    found.append(m)
            else:
                found.extend(regex.finditer(line))
        return found

    for name, text in ctx.inputs(files):
        if text is None:
            if not opts.get("s"):
                status = 2
            continue
        label = "(standard input)" if name == "-" else name
        count = 0
        for number, line in enumerate(split_lines(text), start=1):
            if max_count is not None and count >= max_count:
                break
            found = matches(line)
            if bool(found) == invert:
                continue
            count += 1
            matched_any = True
            if opts.get("q"):
                return 0
            if opts.get("c") or opts.get("l") or opts.get("L"):
                continue
            prefix = f"{label}:" if show_names else ""
            if opts.get("n"):
                prefix += f"{number}:"
            if opts.get("o") and not invert:
                for m in found:
                    if m.group(0):
                        ctx.write(f"{prefix}{m.group(0)}\n")
            else:
                ctx.write(f"{prefix}{line}\n")
        if opts.get("c"):
            ctx.write(f"{label}:{count}\n" if show_names else f"{count}\n")
        elif opts.get("l") and count:
            ctx.write(f"{label}\n")
        elif opts.get("L") and not count:
            ctx.write(f"{label}\n")
    if status == 2 and not matched_any:
        return 2
    return 0 if matched_any else 1


# ---------------------------------------------------------------------------
# sort / uniq
# ---------------------------------------------------------------------------

NUMERIC_PREFIX_RE = re.compile(r"\s*(-?\d+(?:\.\d+)?)")


def _numeric(value: str) -> float:
    match = NUMERIC_PREFIX_RE.match(value)
    return float(match.group(1)) if match else 0.0


def _key_extractor(key: Optional[str], separator: Optional[str]) -> Callable[[str], str]:
    if key is None:
        return lambda line: line
    start_text, _, end_text = key.partition(",")
    start = int(re.match(r"\d+", start_text).group(0))
    end = int(re.match(r"\d+", end_text).group(0)) if end_text else None

    def extract(line: str) -> str:
        fields = line.split(separator) if separator else line.split()
        chosen = fields[start - 1:end] if end else fields[start - 1:]
        return (separator or " ").join(chosen)

    return extract


@command("sort")
def sort(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "rnufk:t:bhV")
    lines: List[str] = []
    status = 0
    for _, text in ctx.inputs(paths):
        if text is None:
            status = 2
            continue
        lines.extend(split_lines(text))
    key = opts.get("k")
    extract = _key_extractor(str(key) if key else None, str(opts["t"]) if "t" in opts else None)
    if opts.get("n") or opts.get("h"):
        sort_key: Callable[[str], object] = lambda line: (_numeric(extract(line)), line)
    elif opts.get("f"):
        sort_key = lambda line: extract(line).lower()
    else:
        sort_key = extract
    ordered = sorted(lines, key=sort_key, reverse=bool(opts.get("r")))
    if opts.get("u"):
        seen = set()
        unique = []
        for line in ordered:
            marker = sort_key(line) if not (opts.get("n") or opts.get("h")) else _numeric(extract(line))
            if marker in seen:
                continue
            seen.add(marker)
            unique.append(line)
        ordered = unique
    ctx.write(join_lines(ordered))
    return status


@command("uniq")
def uniq(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "cdui")
    source = paths[:1]
    text = next(ctx.inputs(source))[1]
    if text is None:
        return 1
    groups: List[Tuple[str, int]] = []
    for line in split_lines(text):
        marker = line.lower() if opts.get("i") else line
        if groups:
            last, count = groups[-1]
            if (last.lower() if opts.get("i") else last) == marker:
                groups[-1] = (last, count + 1)
                continue
        groups.append((line, 1))
    out: List[str] = []
    for line, count in groups:
        if opts.get("d") and count < 2:
            continue
        if opts.get("u") and count > 1:
            continue
        out.append(f"{count:7d} {line}" if opts.get("c") else line)
    result = join_lines(out)
    if len(paths) > 1:
        ctx.fs.write_text(paths[1], result, ctx.cwd)
    else:
        ctx.write(result)
    return 0


# ---------------------------------------------------------------------------
# cut / tr / rev
# ---------------------------------------------------------------------------


def parse_ranges(spec: str) -> List[Tuple[int, Optional[int]]]:
    ranges: List[Tuple[int, Optional[int]]] = []
    for part in spec.split(","):
        if not part:
            continue
        try:
            if "-" in part:
                lo, _, hi = part.partition("-")
                ranges.append((int(lo) if lo else 1, int(hi) if hi else None))
            else:
                ranges.append((int(part), int(part)))
        except ValueError:
            raise UsageError(f"invalid field value '{part}'") from None
    if not ranges or any(lo < 1 for lo, _ in ranges):
        raise UsageError("fields and positions are numbered from 1")
    return ranges


def _selected(count: int, ranges: List[Tuple[int, Optional[int]]]) -> List[int]:
    return [i for i in range(1, count + 1) if any(lo <= i <= (hi or count) for lo, hi in ranges)]


@command("cut")
def cut(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "d:f:c:b:s")
    status = 0
    out: List[str] = []
    if "f" in opts:
        ranges = parse_ranges(str(opts["f"]))
        delimiter = str(opts.get("d", "\t"))
        if len(delimiter) != 1:
            raise UsageError("the delimiter must be a single character")
    elif "c" in opts or "b" in opts:
        ranges = parse_ranges(str(opts.get("c", opts.get("b"))))
        delimiter = None
    else:
        raise UsageError("you must specify a list of bytes, characters, or fields")
    for _, text in ctx.inputs(paths):
        if text is None:
            status = 1
            continue
        for line in split_lines(text):
            if delimiter is None:
                out.append("".join(line[i - 1] for i in _selected(len(line), ranges)))
                continue
            if delimiter not in line:
                if not opts.get("s"):
                    out.append(line)
                continue
            fields = line.split(delimiter)
            out.append(delimiter.join(fields[i - 1] for i in _selected(len(fields), ranges)))
    ctx.write(join_lines(out))
    return status


TR_CLASSES = {
    "[:upper:]": "ABCDEFGHIJKLMNOPQRSTUVWXYZ",
    "[:lower:]": "abcdefghijklmnopqrstuvwxyz",
    "[:digit:]": "0123456789",
    "[:space:]": " \t\n\r\f\v",
    "[:blank:]": " \t",
    "[:punct:]": "!\"#$%&'()*+,-./:;<=>?@[\\]^_`{|}~",
}
TR_CLASSES["[:alpha:]"] = TR_CLASSES["[:upper:]"] + TR_CLASSES["[:lower:]"]
TR_CLASSES["[:alnum:]"] = TR_CLASSES["[:alpha:]"] + TR_CLASSES["[:digit:]"]


def expand_tr_set(spec: str) -> str:
    text, _ = decode_escapes(spec)
    for name, chars in TR_CLASSES.items():
        text = text.replace(name, chars)
    out: List[str] = []
    i = 0
    while i < len(text):
        if i + 2 < len(text) and text[i + 1] == "-":
            lo, hi = ord(text[i]), ord(text[i + 2])
            if lo <= hi:
                out.extend(chr(c) for c in range(lo, hi + 1))
                i += 3
                continue
        out.append(text[i])
        i += 1
    return "".join(out)


@command("tr")
def tr(ctx: CommandContext, args: List[str]) -> int:
    opts, sets = getopt(args, "dscC")
    if not sets:
        raise UsageError("missing operand")
    data = ctx.stdin.read()
    first = expand_tr_set(sets[0])
    complement = bool(opts.get("c") or opts.get("C"))

    def in_first(ch: str) -> bool:
        return (ch in first) != complement

    if opts.get("d"):
        data = "".join(ch for ch in data if not in_first(ch))
        squeeze_set = expand_tr_set(sets[1]) if len(sets) > 1 else ""
    elif len(sets) > 1:
        second = expand_tr_set(sets[1])
        if not second:
            raise UsageError("when not truncating set1, string2 must be non-empty")
        if complement:
            data = "".join(second[-1] if in_first(ch) else ch for ch in data)
        else:
            padded = second + second[-1] * max(0, len(first) - len(second))
            data = data.translate(str.maketrans(first, padded[: len(first)]))
        squeeze_set = second
    else:
        if not opts.get("s"):
            raise UsageError("missing operand after set")
        squeeze_set = first
    if opts.get("s"):
        data = re.sub("([" + re.escape(squeeze_set) + r"])\1+", r"\1", data) if squeeze_set else data
    ctx.write(data)
    return 0


@command("rev")
def rev(ctx: CommandContext, args: List[str]) -> int:
    status = 0
    for _, text in ctx.inputs(args):
        if text is None:
            status = 1
            continue
        ctx.write(join_lines(line[::-1] for line in split_lines(text)))
    return status


# ---------------------------------------------------------------------------
# sed
# ---------------------------------------------------------------------------


class SedRuntimeError(Exception):
    """A substitution failed while running, e.g. a bad back-reference."""


class SedCommand:
    def __init__(self, address: Tuple[Optional[object], Optional[object]], negate: bool, name: str) -> None:
        self.start, self.end = address
        self.negate = negate
        self.name = name
        self.regex: Optional["re.Pattern[str]"] = None
        self.replacement = ""
        self.count = 1
        self.global_ = False
        self.print_ = False
        self.text = ""
        self.active = False


def _sed_replacement(text: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt.isdigit():
                out.append(f"\\g<{nxt}>")
            elif nxt == "n":
                out.append("\n")
            elif nxt == "t":
                out.append("\t")
            else:
                out.append(nxt.replace("\\", "\\\\"))
            i += 2
            continue
        if ch == "&":
            out.append("\\g<0>")
        elif ch == "\\":
            out.append("\\\\")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class SedScript:
    """Parser for the subset of sed: addresses, ``s``, ``d``, ``p``, ``q``, ``a``, ``i``."""

    def __init__(self, source: str, extended: bool) -> None:
        self.src = source
        self.pos = 0
        self.extended = extended
        self.commands: List[SedCommand] = []
        self._parse()

    def _peek(self) -> str:
        return self.src[self.pos] if self.pos < len(self.src) else ""

    def _skip(self, chars: str = " \t") -> None:
        while self.pos < len(self.src) and self.src[self.pos] in chars:
            self.pos += 1

    def _delimited(self, delimiter: str) -> str:
        out: List[str] = []
        while self.pos < len(self.src):
            ch = self.src[self.pos]
            if ch == "\\" and self.pos + 1 < len(self.src):
                nxt = self.src[self.pos + 1]
                out.append(nxt if nxt == delimiter else ch + nxt)
                self.pos += 2
                continue
            if ch == delimiter:
                self.pos += 1
                return "".join(out)
            out.append(ch)
            self.pos += 1
        raise UsageError("unterminated `s' command")

    def _regex(self, pattern: str, flags: int = 0) -> "re.Pattern[str]":
        source = pattern if self.extended else bre_to_python(pattern)
        try:
            return re.compile(source, flags)
        except re.error as exc:
            raise UsageError(f"invalid regular expression: {exc}") from None

    def _address(self) -> Optional[object]:
        ch = self._peek()
        if ch.isdigit():
            start = self.pos
            while self._peek().isdigit():
                self.pos += 1
            return int(self.src[start:self.pos])
        if ch == "$":
            self.pos += 1
            return "$"
        if ch == "/":
            self.pos += 1
            return self._regex(self._delimited("/"))
        return None

    def _parse(self) -> None:
        while True:
            self._skip(" \t\n;")
            if self.pos >= len(self.src):
                return
            start = self._address()
            end = None
            if start is not None and self._peek() == ",":
                self.pos += 1
                end = self._address()
                if end is None:
                    raise UsageError("unexpected `,'")
            self._skip()
            negate = False
            if self._peek() == "!":
                negate = True
                self.pos += 1
                self._skip()
            name = self._peek()
            self.pos += 1
            cmd = SedCommand((start, end), negate, name)
            if name == "s":
                delimiter = self._peek()
                self.pos += 1
                pattern = self._delimited(delimiter)
                cmd.replacement = _sed_replacement(self._delimited(delimiter))
                flags = 0
                while self._peek() and self._peek() not in ";\n}":
                    flag = self._peek()
                    if flag == "g":
                        cmd.global_ = True
                    elif flag in ("i", "I"):
                        flags |= re.IGNORECASE
                    elif flag == "p":
                        cmd.print_ = True
                    elif flag.isdigit():
                        cmd.count = int(flag)
                    elif flag not in " \t":
                        raise UsageError("unknown option to `s'")
                    self.pos += 1
                cmd.regex = self._regex(pattern, flags)
            elif name in ("a", "i", "c"):
                self._skip()
                if self._peek() == "\\":
                    self.pos += 1
                    self._skip(" \t\n")
                end_text = self.src.find("\n", self.pos)
                end_text = len(self.src) if end_text == -1 else end_text
                cmd.text = decode_escapes(self.src[self.pos:end_text])[0]
                self.pos = end_text
            elif name == "y":
                delimiter = self._peek()
                self.pos += 1
                source_chars = self._delimited(delimiter)
                target_chars = self._delimited(delimiter)
                if len(source_chars) != len(target_chars):
                    raise UsageError("strings for `y' command are different lengths")
                cmd.text = source_chars + "\0" + target_chars
            elif name not in ("d", "p", "q", "=", "n"):
                raise UsageError(f"unknown command: `{name}'")
            self.commands.append(cmd)


def _address_matches(address: object, line: str, number: int, is_last: bool) -> bool:
    if isinstance(address, int):
        return number == address
    if address == "$":
        return is_last
    return bool(address.search(line))


def _selects(cmd: SedCommand, line: str, number: int, is_last: bool) -> bool:
    if cmd.start is None:
        selected = True
    elif cmd.end is None:
        selected = _address_matches(cmd.start, line, number, is_last)
    elif cmd.active:
        selected = True
        if isinstance(cmd.end, int):
            if number >= cmd.end:
                cmd.active = False
        elif _address_matches(cmd.end, line, number, is_last):
            cmd.active = False
    elif _address_matches(cmd.start, line, number, is_last):
        selected = True
        cmd.active = not (isinstance(cmd.end, int) and number >= cmd.end)
    else:
        selected = False
    return selected != cmd.negate


def run_sed(script: SedScript, text: str, quiet: bool) -> str:
    lines = split_lines(text)
    out: List[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        number = index + 1
        is_last = index == len(lines) - 1
        deleted = False
        quit_after = False
        append: List[str] = []
        for cmd in script.commands:
            if not _selects(cmd, line, number, is_last):
                continue
            if cmd.name == "s":
                count = 0 if cmd.global_ else 1
                try:
                    if cmd.count > 1 and not cmd.global_:
                        seen = 0

                        def nth(match: "re.Match[str]", _cmd: SedCommand = cmd) -> str:
                            nonlocal seen
                            seen += 1
                            return match.expand(_cmd.replacement) if seen == _cmd.count else match.group(0)

                        new = cmd.regex.sub(nth, line)
                    else:
                        new = cmd.regex.sub(cmd.replacement, line, count=count)
                except re.error as exc:
                    raise SedRuntimeError(f"-e expression #1: {exc}") from None
                if new != line or cmd.regex.search(line):
                    line = new
                    if cmd.print_:
                        out.append(line)
            elif cmd.name == "d":
                deleted = True
                break
            elif cmd.name == "p":
                out.append(line)
            elif cmd.name == "q":
                quit_after = True
                break
            elif cmd.name == "=":
                out.append(str(number))
            elif cmd.name == "a":
                append.append(cmd.text)
            elif cmd.name == "i":
                out.append(cmd.text)
            elif cmd.name == "c":
                out.append(cmd.text)
                deleted = True
                break
            elif cmd.name == "y":
                source_chars, target_chars = cmd.text.split("\0")
                line = line.translate(str.maketrans(source_chars, target_chars))
            elif cmd.name == "n":
                if not quiet:
                    out.append(line)
                if index + 1 < len(lines):
                    index += 1
                    line = lines[index]
                    number = index + 1
                    is_last = index == len(lines) - 1
        if not deleted and not quiet:
            out.append(line)
        out.extend(append)
        if quit_after:
            break
        index += 1
    return join_lines(out)


@command("sed")
def sed(ctx: CommandContext, args: List[str]) -> int:
    opts, operands = getopt(args, "ne:Eri")
    if "e" in opts:
        source = str(opts["e"])
    elif operands:
        source = operands.pop(0)
    else:
        raise UsageError("usage: sed [-n] [-E] [-i] script [file...]")
    script = SedScript(source, extended=bool(opts.get("E") or opts.get("r")))
    quiet = bool(opts.get("n"))
    if opts.get("i"):
        if not operands:
            raise UsageError("no input files")
        status = 0
        for path in operands:
            try:
                original = ctx.read_text(path)
                for command_ in script.commands:
                    command_.active = False
                ctx.fs.write_text(path, run_sed(script, original, quiet), ctx.cwd)
            except SandboxError as exc:
                ctx.error(f"can't read {path}: {exc.message}")
                status = 2
            except SedRuntimeError as exc:
                ctx.error(str(exc))
                return 1
        return status
    status = 0
    chunks: List[str] = []
    for _, text in ctx.inputs(operands):
        if text is None:
            status = 2
            continue
        chunks.append(text if text.endswith("\n") or not text else text + "\n")
    try:
        ctx.write(run_sed(script, "".join(chunks), quiet))
    except SedRuntimeError as exc:
        ctx.error(str(exc))
        return 1
    return status
