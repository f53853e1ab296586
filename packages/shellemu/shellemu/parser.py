from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from shellemu.lexer import NAME_RE, ShellSyntaxError, Token, tokenize
from shellemu.nodes import (
    AndOr,
    Command,
    CommandList,
    ForClause,
    FunctionDef,
    Group,
    IfClause,
    Literal,
    LoopClause,
    Pipeline,
    Redirect,
    SimpleCommand,
    Word,
)

ASSIGNMENT_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)=(.*)", re.DOTALL)
CLOSING_WORDS = frozenset({"then", "do", "done", "fi", "else", "elif", "}", "esac", "in"})


class Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != "EOF":
            self.pos += 1
        return tok

    @staticmethod
    def _is_reserved(tok: Token, words: Sequence[str]) -> bool:
        return tok.kind == "WORD" and tok.value in words and tok.word is not None and tok.word.is_plain

    @staticmethod
    def _is_op(tok: Token, *ops: str) -> bool:
        return tok.kind == "OP" and tok.value in ops

    def _unexpected(self, tok: Token) -> ShellSyntaxError:
        if tok.kind == "EOF":
            return ShellSyntaxError("syntax error: unexpected end of file")
        value = "newline" if tok.kind == "NEWLINE" else tok.value
        return ShellSyntaxError(f"syntax error near unexpected token `{value}'")

    def _expect(self, word: str) -> None:
        tok = self.peek()
        if not self._is_reserved(tok, (word,)):
            raise self._unexpected(tok)
        self.advance()

    def _skip_newlines(self) -> None:
        while self.peek().kind == "NEWLINE":
            self.advance()

    # ------------------------------------------------------------------

    def parse_script(self) -> CommandList:
        body = self.parse_list(())
        tok = self.peek()
        if tok.kind != "EOF":
            raise self._unexpected(tok)
        return body

    def parse_list(self, terminators: Sequence[str]) -> CommandList:
        items: List[AndOr] = []
        self._skip_newlines()
        while True:
            tok = self.peek()
            if tok.kind == "EOF" or self._is_op(tok, ")") or self._is_reserved(tok, terminators):
                break
            items.append(self.parse_and_or())
            tok = self.peek()
            if self._is_op(tok, ";", "&"):
                self.advance()
                self._skip_newlines()
                continue
            if tok.kind == "NEWLINE":
                self._skip_newlines()
                continue
            break
        return CommandList(items)

    def parse_and_or(self) -> AndOr:
        node = AndOr(self.parse_pipeline())
        while self._is_op(self.peek(), "&&", "||"):
            op = self.advance().value
            self._skip_newlines()
            node.rest.append((op, self.parse_pipeline()))
        return node

    def parse_pipeline(self) -> Pipeline:
        negated = False
        if self._is_reserved(self.peek(), ("!",)):
            self.advance()
            negated = True
        commands = [self.parse_command()]
        while self._is_op(self.peek(), "|"):
            self.advance()
            self._skip_newlines()
            commands.append(self.parse_command())
        return Pipeline(commands, negated)

    def parse_command(self) -> Command:
        tok = self.peek()
        if self._is_op(tok, "("):
            self.advance()
            body = self.parse_list(())
            if not self._is_op(self.peek(), ")"):
                raise self._unexpected(self.peek())
            self.advance()
            return self._with_redirects(Group(body, subshell=True))
        if tok.kind == "WORD" and tok.word is not None and tok.word.is_plain:
            value = tok.value
            if value == "if":
                return self._with_redirects(self.parse_if())
            if value in ("while", "until"):
                return self._with_redirects(self.parse_loop())
            if value == "for":
                return self._with_redirects(self.parse_for())
            if value == "{":
                self.advance()
                body = self.parse_list(("}",))
                self._expect("}")
                return self._with_redirects(Group(body))
            if value == "case":
                raise ShellSyntaxError("case statements are not supported")
            if value == "function":
                self.advance()
                name_tok = self.advance()
                if name_tok.kind != "WORD" or not NAME_RE.fullmatch(name_tok.value):
                    raise self._unexpected(name_tok)
                if self._is_op(self.peek(), "(") and self._is_op(self.peek(1), ")"):
                    self.advance()
                    self.advance()
                self._skip_newlines()
                return FunctionDef(name_tok.value, self.parse_command())
            if value in CLOSING_WORDS:
                raise self._unexpected(tok)
            if NAME_RE.fullmatch(value) and self._is_op(self.peek(1), "(") and self._is_op(self.peek(2), ")"):
                self.advance()
                self.advance()
                self.advance()
                self._skip_newlines()
                return FunctionDef(value, self.parse_command())
        return self.parse_simple()

    def parse_if(self) -> IfClause:
        self._expect("if")
        condition = self.parse_list(("then",))
        self._expect("then")
        body = self.parse_list(("elif", "else", "fi"))
        node = IfClause(branches=[(condition, body)])
        while True:
            tok = self.peek()
            if self._is_reserved(tok, ("elif",)):
                self.advance()
                condition = self.parse_list(("then",))
                self._expect("then")
                node.branches.append((condition, self.parse_list(("elif", "else", "fi"))))
                continue
            if self._is_reserved(tok, ("else",)):
                self.advance()
                node.else_body = self.parse_list(("fi",))
            self._expect("fi")
            return node

    def parse_loop(self) -> LoopClause:
        keyword = self.advance().value
        condition = self.parse_list(("do",))
        self._expect("do")
        body = self.parse_list(("done",))
        self._expect("done")
        return LoopClause(condition, body, until=keyword == "until")

    def parse_for(self) -> ForClause:
        self._expect("for")
        name_tok = self.advance()
        if name_tok.kind != "WORD" or not NAME_RE.fullmatch(name_tok.value):
            raise self._unexpected(name_tok)
        self._skip_newlines()
        items: Optional[List[Word]] = None
        if self._is_reserved(self.peek(), ("in",)):
            self.advance()
            items = []
            while self.peek().kind == "WORD":
                items.append(self.advance().word)
        if self._is_op(self.peek(), ";"):
            self.advance()
        self._skip_newlines()
        self._expect("do")
        body = self.parse_list(("done",))
        self._expect("done")
        return ForClause(name_tok.value, items, body)

    def parse_simple(self) -> SimpleCommand:
        cmd = SimpleCommand()
        while True:
            tok = self.peek()
            if tok.kind == "REDIR":
                cmd.redirects.append(self._parse_redirect())
                continue
            if tok.kind == "WORD":
                self.advance()
                if not cmd.words:
                    assignment = self._split_assignment(tok.word)
                    if assignment is not None:
                        cmd.assignments.append(assignment)
                        continue
                cmd.words.append(tok.word)
                continue
            break
        if not (cmd.words or cmd.assignments or cmd.redirects):
            raise self._unexpected(self.peek())
        return cmd

    def _with_redirects(self, node):
        while self.peek().kind == "REDIR":
            node.redirects.append(self._parse_redirect())
        return node

    def _parse_redirect(self) -> Redirect:
        tok = self.advance()
        if tok.heredoc is not None:
            return Redirect(fd=tok.fd, op=tok.value, heredoc=tok.heredoc)
        target = self.peek()
        if target.kind != "WORD":
            raise self._unexpected(target)
        self.advance()
        return Redirect(fd=tok.fd, op=tok.value, target=target.word)

    @staticmethod
    def _split_assignment(word: Word) -> Optional[Tuple[str, Word]]:
        if not word.segments:
            return None
        first = word.segments[0]
        if not isinstance(first, Literal) or first.quoted:
            return None
        match = ASSIGNMENT_RE.fullmatch(first.text)
        if not match:
            return None
        name, rest = match.group(1), match.group(2)
        segments = ([Literal(rest, False)] if rest else []) + list(word.segments[1:])
        return name, Word(segments, word.raw[len(name) + 1:])


def parse(source: str) -> CommandList:
    return Parser(tokenize(source)).parse_script()
