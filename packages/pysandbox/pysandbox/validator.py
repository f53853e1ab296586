"""Static checks run on user code before it is compiled."""
from __future__ import annotations

import ast
import string
from typing import Iterable

from pysandbox.errors import SandboxViolation

ALLOWED_DUNDERS = frozenset(
    {
        "__init__",
        "__name__",
        "__doc__",
        "__qualname__",
        "__class__",
        "__module__",
        "__version__",
        "__all__",
        "__repr__",
        "__str__",
        "__len__",
        "__iter__",
        "__next__",
        "__enter__",
        "__exit__",
        "__eq__",
        "__hash__",
        "__contains__",
        "__getitem__",
        "__setitem__",
        "__call__",
        "__post_init__",
    }
)

DENIED_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_back",
        "f_code",
        "tb_frame",
        "tb_next",
        "co_code",
        "get_loop",
        "run_in_executor",
        "to_thread",
        "get_running_loop",
        "get_event_loop",
        "set_event_loop",
        "new_event_loop",
        "get_context",
        "mro",
        "getaddrinfo",
        "getnameinfo",
        "call_soon_threadsafe",
        "set_default_executor",
        "sock_connect",
        "create_connection",
        "create_datagram_endpoint",
        "create_server",
        "subprocess_exec",
        "subprocess_shell",
    }
)

ALLOWED_DUNDER_NAMES = frozenset({"__name__", "__doc__", "__debug__"})

FORMAT_METHODS = frozenset({"format", "format_map"})


def is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def check_attribute(name: str, *, store: bool = False) -> None:
    """Raise ``SandboxViolation`` if ``name`` may not be read (or written).

    Private names are rejected outright: runtime objects keep their host
    references (event loops, contexts) behind ``_`` fields.
    Only the allowlisted dunders may be read, and none may be written.
    """
    if name in DENIED_ATTRIBUTES:
        raise SandboxViolation(f"access to attribute '{name}' is not allowed")
    if not name.startswith("_"):
        return
    if is_dunder(name) and not store and name in ALLOWED_DUNDERS:
        return
    if is_dunder(name):
        raise SandboxViolation(f"access to attribute '{name}' is not allowed")
    raise SandboxViolation(f"access to private attribute '{name}' is not allowed")


def check_format_receiver(method: str, receiver: ast.AST) -> None:
    """``str.format`` resolves fields with getattr, so only literal templates are allowed."""
    if not (isinstance(receiver, ast.Constant) and isinstance(receiver.value, str)):
        raise SandboxViolation(f"str.{method} is only allowed on string literals; use an f-string")
    try:
        fields = list(_format_fields(receiver.value))
    except ValueError:
        fields = []
    for field in fields:
        for part in field.replace("[", ".").replace("]", "").split(".")[1:]:
            if part.startswith("_"):
                raise SandboxViolation(f"format field '{field}' is not allowed")


def _check_name(name: str) -> None:
    if is_dunder(name) and name not in ALLOWED_DUNDER_NAMES:
        raise SandboxViolation(f"use of name '{name}' is not allowed")


def _format_fields(template: str) -> Iterable[str]:
    for _, field, spec, _ in string.Formatter().parse(template):
        if field:
            yield field
        if spec:
            yield from _format_fields(spec)


class CodeValidator(ast.NodeVisitor):
    """Walks a module and raises ``SandboxViolation`` on the first problem.

    Covers attribute access (including ``match`` class patterns), dunder
    names and ``str.format`` templates, whose field lookups bypass the AST.
    """

    def validate(self, tree: ast.AST) -> None:
        self.visit(tree)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        check_attribute(node.attr, store=not isinstance(node.ctx, ast.Load))
        if node.attr in FORMAT_METHODS:
            check_format_receiver(node.attr, node.value)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        _check_name(node.id)

    def visit_Global(self, node: ast.Global) -> None:
        for name in node.names:
            _check_name(name)

    visit_Nonlocal = visit_Global

    def visit_alias(self, node: ast.alias) -> None:
        if node.asname:
            _check_name(node.asname)

    def visit_arg(self, node: ast.arg) -> None:
        _check_name(node.arg)
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        for attr in node.kwd_attrs:
            check_attribute(attr)
        self.generic_visit(node)


def validate_source(tree: ast.AST) -> None:
    CodeValidator().validate(tree)
