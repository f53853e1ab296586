from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from shellemu.escapes import decode_escapes
from shellemu.nodes import Arith, CommandSub, HereDoc, Literal, Param, Segment, Word

METACHARS = frozenset(" \t\n|&;()<>")
# Longest first.
OPERATORS = (
    "&&", "||", ";;", "<<-", "<<", "&>>", "&>", ">>", ">&", "<&", ">|",
    "|", "&", ";", "(", ")", "<", ">",
)
REDIRECT_OPS = frozenset({"<<-", "<<", "&>>", "&>", ">>", ">&", "<&", ">|", "<", ">"})
BOTH_STREAMS_FD = -1

NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
IO_NUMBER_RE = re.compile(r"(\d+)(?=[<>])")
BRACED_NAME_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*|[0-9]+|[?#@*$!-])")
PARAM_OPS = (":-", ":=", ":+", ":?", "##", "%%", "//", "-", "=", "+", "?", "#", "%", "/")
SPECIAL_PARAMS = "?#@*$!-0123456789"


class ShellSyntaxError(Exception):
    pass


@dataclass
class Token:
    kind: str  # WORD, OP, REDIR, NEWLINE, EOF
    value: str
    word: Optional[Word] = None
    fd: Optional[int] = None
    heredoc: Optional[HereDoc] = None


class Lexer:
    def __init__(self, source: str) -> None:
        self.src = source
        self.pos = 0
        self._pending: List[HereDoc] = []

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        src = self.src
        while True:
            self._skip_blanks()
            if self.pos >= len(src):
                if self._pending:
                    self._read_heredoc_bodies()
                tokens.append(Token("EOF", ""))
                return tokens
            ch = src[self.pos]
            if ch == "#":
                end = src.find("\n", self.pos)
                self.pos = len(src) if end == -1 else end
                continue
            if ch == "\n":
                self.pos += 1
                tokens.append(Token("NEWLINE", "\n"))
                if self._pending:
                    self._read_heredoc_bodies()
                continue
            match = IO_NUMBER_RE.match(src, self.pos)
            if match:
                self.pos = match.end()
                op = self._match_operator()
                tokens.append(self._redirect_token(op, int(match.group(1))))
                continue
            op = self._match_operator()
            if op is not None:
                if op in REDIRECT_OPS:
                    tokens.append(self._redirect_token(op, None))
                else:
                    tokens.append(Token("OP", op))
                continue
            tokens.append(self._read_word())

    # ------------------------------------------------------------------

    def _skip_blanks(self) -> None:
        src = self.src
        while self.pos < len(src):
            if src[self.pos] in " \t":
                self.pos += 1
            elif src.startswith("\\\n", self.pos):
                self.pos += 2
            else:
                break

    def _match_operator(self) -> Optional[str]:
        for op in OPERATORS:
            if self.src.startswith(op, self.pos):
                self.pos += len(op)
                return op
        return None

    def _redirect_token(self, op: Optional[str], fd: Optional[int]) -> Token:
        if op is None or op not in REDIRECT_OPS:
            raise ShellSyntaxError("syntax error near unexpected token `newline'")
        if fd is None:
            if op in ("&>", "&>>"):
                fd = BOTH_STREAMS_FD
            elif op.startswith("<"):
                fd = 0
            else:
                fd = 1
        if op in ("<<", "<<-"):
            self._skip_blanks()
            if self.pos >= len(self.src) or self.src[self.pos] in METACHARS:
                raise ShellSyntaxError("syntax error near unexpected token `newline'")
            word = self._read_word().word
            delimiter = "".join(seg.text for seg in word.segments if isinstance(seg, Literal))
            heredoc = HereDoc(delimiter=delimiter, strip_tabs=op == "<<-", expand=not word.has_quotes)
            self._pending.append(heredoc)
            return Token("REDIR", op, fd=fd, heredoc=heredoc)
        return Token("REDIR", op, fd=fd)

    def _read_heredoc_bodies(self) -> None:
        src = self.src
        for heredoc in self._pending:
            lines: List[str] = []
            while self.pos < len(src):
                end = src.find("\n", self.pos)
                if end == -1:
                    line, self.pos = src[self.pos:], len(src)
                else:
                    line, self.pos = src[self.pos:end], end + 1
                if heredoc.strip_tabs:
                    line = line.lstrip("\t")
                if line == heredoc.delimiter:
                    break
                lines.append(line)
            heredoc.body = "".join(line + "\n" for line in lines)
            if heredoc.expand:
                heredoc.segments = Lexer(heredoc.body)._read_double_quoted(heredoc=True)
        self._pending = []

    def _read_word(self) -> Token:
        src = self.src
        start = self.pos
        segments: List[Segment] = []
        buf: List[str] = []

        def flush() -> None:
            if buf:
                segments.append(Literal("".join(buf), False))
                buf.clear()

        while self.pos < len(src):
            ch = src[self.pos]
            if ch in METACHARS:
                break
            if ch == "\\":
                if self.pos + 1 < len(src):
                    nxt = src[self.pos + 1]
                    self.pos += 2
                    if nxt != "\n":
                        flush()
                        segments.append(Literal(nxt, True))
                    continue
                buf.append("\\")
                self.pos += 1
                continue
            if ch == "'":
                end = src.find("'", self.pos + 1)
                if end == -1:
                    raise ShellSyntaxError("unexpected EOF while looking for matching `''")
                flush()
                segments.append(Literal(src[self.pos + 1:end], True))
                self.pos = end + 1
                continue
            if ch == '"':
                flush()
                self.pos += 1
                segments.extend(self._read_double_quoted())
                continue
            if ch == "$":
                segment = self._read_dollar(quoted=False)
                if segment is None:
                    buf.append("$")
                    self.pos += 1
                else:
                    flush()
                    segments.append(segment)
                continue
            if ch == "`":
                flush()
                segments.append(CommandSub(self._read_backtick(), False))
                continue
            buf.append(ch)
            self.pos += 1
        flush()
        raw = src[start:self.pos]
        return Token("WORD", raw, word=Word(segments, raw))

    def _read_double_quoted(self, heredoc: bool = False) -> List[Segment]:
        src = self.src
        segments: List[Segment] = []
        buf: List[str] = []
        escapable = "$`\\\n" if heredoc else '$`"\\\n'

        def flush() -> None:
            if buf:
                segments.append(Literal("".join(buf), True))
                buf.clear()

        while True:
            if self.pos >= len(src):
                if heredoc:
                    break
                raise ShellSyntaxError("unexpected EOF while looking for matching `\"'")
            ch = src[self.pos]
            if ch == '"' and not heredoc:
                self.pos += 1
                break
            if ch == "\\" and self.pos + 1 < len(src) and src[self.pos + 1] in escapable:
                if src[self.pos + 1] != "\n":
                    buf.append(src[self.pos + 1])
                self.pos += 2
                continue
            if ch == "$":
                segment = self._read_dollar(quoted=True)
                if segment is None:
                    buf.append("$")
                    self.pos += 1
                else:
                    flush()
                    segments.append(segment)
                continue
            if ch == "`":
                flush()
                segments.append(CommandSub(self._read_backtick(), True))
                continue
            buf.append(ch)
            self.pos += 1
        flush()
        if not segments:
            segments.append(Literal("", True))
        return segments

    def _read_dollar(self, quoted: bool) -> Optional[Segment]:
        src = self.src
        pos = self.pos
        nxt = src[pos + 1] if pos + 1 < len(src) else ""
        if src.startswith("$((", pos):
            end = self._find_arith_end(pos + 3)
            self.pos = end + 2
            return Arith(src[pos + 3:end], quoted)
        if nxt == "(":
            end = self._find_matching_paren(pos + 2)
            self.pos = end + 1
            return CommandSub(src[pos + 2:end], quoted)
        if nxt == "{":
            end = self._find_brace_end(pos + 2)
            self.pos = end + 1
            return self._parse_braced(src[pos + 2:end], quoted)
        if nxt == "'" and not quoted:
            end = pos + 2
            while end < len(src) and src[end] != "'":
                end += 2 if src[end] == "\\" else 1
            if end >= len(src):
                raise ShellSyntaxError("unexpected EOF while looking for matching `''")
            self.pos = end + 1
            text, _ = decode_escapes(src[pos + 2:end])
            return Literal(text, True)
        if nxt and (nxt.isalpha() or nxt == "_"):
            match = NAME_RE.match(src, pos + 1)
            self.pos = match.end()
            return Param(match.group(0), quoted=quoted)
        if nxt and nxt in SPECIAL_PARAMS:
            self.pos = pos + 2
            return Param(nxt, quoted=quoted)
        return None

    def _find_arith_end(self, start: int) -> int:
        depth = 0
        i = start
        while i < len(self.src):
            ch = self.src[i]
            if ch == "(":
                depth += 1
            elif ch == ")":
                if depth == 0:
                    if self.src.startswith("))", i):
                        return i
                    raise ShellSyntaxError("syntax error in arithmetic expression")
                depth -= 1
            i += 1
        raise ShellSyntaxError("unexpected EOF while looking for matching `))'")

    def _find_matching_paren(self, start: int) -> int:
        src = self.src
        depth = 1
        i = start
        while i < len(src):
            ch = src[i]
            if ch == "\\":
                i += 2
                continue
            if ch == "'":
                end = src.find("'", i + 1)
                if end == -1:
                    break
                i = end + 1
                continue
            if ch == '"':
                i += 1
                while i < len(src) and src[i] != '"':
                    i += 2 if src[i] == "\\" else 1
                i += 1
                continue
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        raise ShellSyntaxError("unexpected EOF while looking for matching `)'")

    def _find_brace_end(self, start: int) -> int:
        depth = 1
        i = start
        while i < len(self.src):
            ch = self.src[i]
            if ch == "\\":
                i += 2
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        raise ShellSyntaxError("unexpected EOF while looking for matching `}'")

    def _parse_braced(self, inner: str, quoted: bool) -> Param:
        if inner.startswith("#") and len(inner) > 1:
            name = inner[1:]
            if not BRACED_NAME_RE.fullmatch(name):
                raise ShellSyntaxError(f"${{{inner}}}: bad substitution")
            return Param(name, op="length", quoted=quoted)
        match = BRACED_NAME_RE.match(inner)
        if not match:
            raise ShellSyntaxError(f"${{{inner}}}: bad substitution")
        name = match.group(1)
        rest = inner[match.end():]
        if not rest:
            return Param(name, quoted=quoted)
        for op in PARAM_OPS:
            if rest.startswith(op):
                arg_source = rest[len(op):]
                if len(arg_source) >= 2 and arg_source[0] == arg_source[-1] and arg_source[0] in "'\"":
                    arg_source = arg_source[1:-1]
                arg = Word(Lexer(arg_source)._read_double_quoted(heredoc=True), arg_source)
                return Param(name, op=op, arg=arg, quoted=quoted)
        raise ShellSyntaxError(f"${{{inner}}}: bad substitution")

    def _read_backtick(self) -> str:
        src = self.src
        buf: List[str] = []
        i = self.pos + 1
        while i < len(src):
            ch = src[i]
            if ch == "\\" and i + 1 < len(src) and src[i + 1] in "`$\\":
                buf.append(src[i + 1])
                i += 2
                continue
            if ch == "`":
                self.pos = i + 1
                return "".join(buf)
            buf.append(ch)
            i += 1
        raise ShellSyntaxError("unexpected EOF while looking for matching ``'")


def tokenize(source: str) -> List[Token]:
    return Lexer(source).tokenize()


def lex_template(text: str) -> List[Segment]:
    """Segments of text expanded like a here-document body (quotes are literal)."""
    return Lexer(text)._read_double_quoted(heredoc=True)
