"""A small ``jq``: paths, iteration, pipes, commas and a handful of builtins.

Supported filters: ``.``, ``.a.b``, ``.a?``, ``."key"``, ``.[n]``, ``.[]``,
``.["key"]``, ``|``, ``,``, comparisons, parentheses, literals and the
builtins ``keys``, ``length``, ``type``, ``values``, ``not``,
``select(f)``, ``map(f)``, ``has(k)``.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterator, List, Optional

from shellemu.commands.registry import CommandContext, command, getopt

TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|<=|>=|\.\.|[.\[\]|,()<>?])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

Filter = Callable[[Any], Iterator[Any]]


class JqError(Exception):
    pass


class JqCompileError(Exception):
    pass


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _truthy(value: Any) -> bool:
    return value is not None and value is not False


def _index(value: Any, key: Any, optional: bool) -> Iterator[Any]:
    if value is None:
        yield None
        return
    if isinstance(key, str) and isinstance(value, dict):
        yield value.get(key)
        return
    if isinstance(key, int) and isinstance(value, list):
        yield value[key] if -len(value) <= key < len(value) else None
        return
    if optional:
        return
    shown = json.dumps(key) if isinstance(key, str) else key
    raise JqError(f"Cannot index {_type_name(value)} with {shown}")


def _iterate(value: Any, optional: bool) -> Iterator[Any]:
    if isinstance(value, list):
        yield from value
    elif isinstance(value, dict):
        yield from value.values()
    elif not optional:
        raise JqError(f"Cannot iterate over {_type_name(value)}")


def _length(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise JqError("boolean has no length")
    if isinstance(value, (int, float)):
        return abs(value)
    return len(value)


def _keys(value: Any) -> List[Any]:
    if isinstance(value, dict):
        return sorted(value)
    if isinstance(value, list):
        return list(range(len(value)))
    raise JqError(f"{_type_name(value)} has no keys")


COMPARISONS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


class JqParser:
    def __init__(self, source: str) -> None:
        self.tokens: List[tuple] = []
        pos = 0
        source = source.strip()
        while pos < len(source):
            match = TOKEN_RE.match(source, pos)
            if not match or match.end() == pos:
                raise JqCompileError(f"syntax error at '{source[pos:]}'")
            kind = match.lastgroup
            self.tokens.append((kind, match.group(kind)))
            pos = match.end()
            while pos < len(source) and source[pos].isspace():
                pos += 1
        self.pos = 0

    def _peek(self) -> Optional[tuple]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            raise JqCompileError(f"expected '{value}' but got '{tok[1] if tok else 'end of input'}'")

    def parse(self) -> Filter:
        if not self.tokens:
            return lambda value: iter([value])
        result = self._pipe()
        if self._peek() is not None:
            raise JqCompileError(f"unexpected token '{self._peek()[1]}'")
        return result

    def _pipe(self) -> Filter:
        left = self._comma()
        while self._accept("|"):
            right = self._comma()
            left = (lambda lf, rf: lambda value: (out for mid in lf(value) for out in rf(mid)))(left, right)
        return left

    def _comma(self) -> Filter:
        parts = [self._compare()]
        while self._accept(","):
            parts.append(self._compare())
        if len(parts) == 1:
            return parts[0]
        return lambda value: (out for part in parts for out in part(value))

    def _compare(self) -> Filter:
        left = self._postfix()
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in COMPARISONS:
            self.pos += 1
            op = COMPARISONS[tok[1]]
            right = self._postfix()

            def compare(value: Any) -> Iterator[Any]:
                for b in right(value):
                    for a in left(value):
                        try:
                            yield op(a, b)
                        except TypeError:
                            raise JqError(f"cannot compare {_type_name(a)} and {_type_name(b)}") from None

            return compare
        return left

    def _postfix(self) -> Filter:
        current = self._primary()
        while True:
            tok = self._peek()
            if tok == ("op", "[") or (tok == ("op", ".") and self._next_is_key()):
                if tok == ("op", "."):
                    self.pos += 1
                current = self._suffix(current)
                continue
            break
        return current

    def _next_is_key(self) -> bool:
        nxt = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        return nxt is not None and (nxt[0] in ("ident", "string") or nxt == ("op", "["))

    def _optional(self) -> bool:
        return self._accept("?")

    def _suffix(self, base: Filter) -> Filter:
        tok = self._peek()
        if tok is not None and tok[0] in ("ident", "string"):
            self.pos += 1
            key = json.loads(tok[1]) if tok[0] == "string" else tok[1]
            optional = self._optional()
            return lambda value: (out for v in base(value) for out in _index(v, key, optional))
        self._expect("[")
        if self._accept("]"):
            optional = self._optional()
            return lambda value: (out for v in base(value) for out in _iterate(v, optional))
        tok = self._peek()
        if tok is None or tok[0] not in ("number", "string"):
            raise JqCompileError("only literal indexes are supported")
        self.pos += 1
        key: Any = json.loads(tok[1])
        if isinstance(key, float):
            key = int(key)
        self._expect("]")
        optional = self._optional()
        return lambda value: (out for v in base(value) for out in _index(v, key, optional))

    def _primary(self) -> Filter:
        tok = self._peek()
        if tok is None:
            raise JqCompileError("unexpected end of filter")
        kind, text = tok
        if kind == "op" and text == ".":
            self.pos += 1
            identity: Filter = lambda value: iter([value])
            nxt = self._peek()
            if nxt is not None and (nxt[0] in ("ident", "string") or nxt == ("op", "[")):
                return self._suffix(identity)
            return identity
        if kind == "op" and text == "..":
            self.pos += 1
            return _recurse
        if kind == "op" and text == "(":
            self.pos += 1
            inner = self._pipe()
            self._expect(")")
            return inner
        if kind in ("number", "string"):
            self.pos += 1
            literal = json.loads(text)
            return lambda value: iter([literal])
        if kind == "op" and text == "[":
            self.pos += 1
            if self._accept("]"):
                return lambda value: iter([[]])
            inner = self._pipe()
            self._expect("]")
            return lambda value: iter([list(inner(value))])
        if kind == "ident":
            self.pos += 1
            return self._builtin(text)
        raise JqCompileError(f"unexpected token '{text}'")

    def _argument(self) -> Filter:
        self._expect("(")
        inner = self._pipe()
        self._expect(")")
        return inner

    def _builtin(self, name: str) -> Filter:
        if name in ("true", "false", "null"):
            literal = json.loads(name)
            return lambda value: iter([literal])
        if name == "keys":
            return lambda value: iter([_keys(value)])
        if name == "length":
            return lambda value: iter([_length(value)])
        if name == "type":
            return lambda value: iter([_type_name(value)])
        if name == "not":
            return lambda value: iter([not _truthy(value)])
        if name == "values":
            return lambda value: iter([value] if value is not None else [])
        if name == "empty":
            return lambda value: iter([])
        if name == "select":
            cond = self._argument()
            return lambda value: iter([value] if any(_truthy(c) for c in cond(value)) else [])
        if name == "map":
            fn = self._argument()
            return lambda value: iter([[out for item in _iterate(value, False) for out in fn(item)]])
        if name == "has":
            key_filter = self._argument()

            def has(value: Any) -> Iterator[Any]:
                for key in key_filter(value):
                    if isinstance(value, dict):
                        yield key in value
                    elif isinstance(value, list) and isinstance(key, int):
                        yield 0 <= key < len(value)
                    else:
                        raise JqError(f"Cannot check whether {_type_name(value)} has a key")

            return has
        raise JqCompileError(f"{name}/0 is not defined")


def _recurse(value: Any) -> Iterator[Any]:
    yield value
    if isinstance(value, list):
        for item in value:
            yield from _recurse(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _recurse(item)


def compile_filter(source: str) -> Filter:
    return JqParser(source).parse()


def iter_json_values(text: str) -> Iterator[Any]:
    decoder = json.JSONDecoder()
    pos = 0
    while True:
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text):
            return
        value, pos = decoder.raw_decode(text, pos)
        yield value


def format_value(value: Any, *, raw: bool, compact: bool) -> str:
    if raw and isinstance(value, str):
        return value
    if compact:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(value, indent=2, ensure_ascii=False)


@command("jq")
def jq(ctx: CommandContext, args: List[str]) -> int:
    opts, operands = getopt(args, "rcnjeSM")
    source = operands.pop(0) if operands else "."
    try:
        program = compile_filter(source)
    except JqCompileError as exc:
        ctx.error(f"error: {exc}")
        return 3
    if opts.get("n"):
        inputs: List[Any] = [None]
    else:
        inputs = []
        for _, text in ctx.inputs(operands):
            if text is None:
                return 2
            try:
                inputs.extend(iter_json_values(text))
            except json.JSONDecodeError as exc:
                ctx.error(f"error (at <stdin>:{exc.lineno}): {exc.msg}")
                return 2
    raw = bool(opts.get("r") or opts.get("j"))
    compact = bool(opts.get("c"))
    last: Any = None
    try:
        for value in inputs:
            for out in program(value):
                last = out
                ctx.write(format_value(out, raw=raw, compact=compact) + ("" if opts.get("j") else "\n"))
    except JqError as exc:
        ctx.error(f"error: {exc}")
        return 5
    if opts.get("e"):
        return 0 if _truthy(last) else 1
    return 0
