"""Syntax tree produced by the parser and walked by the interpreter."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union


# --- word segments -----------------------------------------------------


@dataclass
class Literal:
    text: str
    quoted: bool = False


@dataclass
class Param:
    """``$name``, ``${name}`` and the ``${name<op>word}`` forms."""

    name: str
    op: Optional[str] = None
    arg: Optional["Word"] = None
    quoted: bool = False


@dataclass
class CommandSub:
    source: str
    quoted: bool = False


@dataclass
class Arith:
    source: str
    quoted: bool = False


Segment = Union[Literal, Param, CommandSub, Arith]


@dataclass
class Word:
    segments: List[Segment]
    raw: str = ""

    @property
    def is_plain(self) -> bool:
        return all(isinstance(seg, Literal) and not seg.quoted for seg in self.segments)

    @property
    def has_quotes(self) -> bool:
        return any(getattr(seg, "quoted", False) for seg in self.segments)


@dataclass
class HereDoc:
    delimiter: str
    strip_tabs: bool
    expand: bool
    body: str = ""
    segments: Optional[List[Segment]] = None


# --- commands ------------------------------------------------------------


@dataclass
class Redirect:
    fd: int
    op: str
    target: Optional[Word] = None
    heredoc: Optional[HereDoc] = None


@dataclass
class SimpleCommand:
    assignments: List[Tuple[str, Word]] = field(default_factory=list)
    words: List[Word] = field(default_factory=list)
    redirects: List[Redirect] = field(default_factory=list)


@dataclass
class CommandList:
    items: List["AndOr"] = field(default_factory=list)


@dataclass
class IfClause:
    branches: List[Tuple[CommandList, CommandList]]
    else_body: Optional[CommandList] = None
    redirects: List[Redirect] = field(default_factory=list)


@dataclass
class LoopClause:
    condition: CommandList
    body: CommandList
    until: bool = False
    redirects: List[Redirect] = field(default_factory=list)


@dataclass
class ForClause:
    variable: str
    items: Optional[List[Word]]
    body: CommandList
    redirects: List[Redirect] = field(default_factory=list)


@dataclass
class Group:
    body: CommandList
    subshell: bool = False
    redirects: List[Redirect] = field(default_factory=list)


@dataclass
class FunctionDef:
    name: str
    body: "Command"


Command = Union[SimpleCommand, IfClause, LoopClause, ForClause, Group, FunctionDef]


@dataclass
class Pipeline:
    commands: List[Command]
    negated: bool = False


@dataclass
class AndOr:
    first: Pipeline
    rest: List[Tuple[str, Pipeline]] = field(default_factory=list)
