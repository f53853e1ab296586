"""``$(( ... ))`` evaluation on integers, via a whitelisted Python AST walk.

Values are signed 64-bit: every intermediate result wraps around, and shift
counts are taken modulo 64.
"""
from __future__ import annotations

import ast
import operator
import re
from typing import Callable, Optional

INT_RE = re.compile(r"\s*-?\d+\s*")

WIDTH = 64
MODULUS = 1 << WIDTH
SIGN_BIT = 1 << (WIDTH - 1)


class ShellArithmeticError(Exception):
    pass


def wrap(value: int) -> int:
    """Reduce ``value`` to a signed 64-bit integer."""
    return ((value + SIGN_BIT) % MODULUS) - SIGN_BIT


def _c_div(a: int, b: int) -> int:
    if b == 0:
        raise ShellArithmeticError("division by 0")
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


def _c_mod(a: int, b: int) -> int:
    if b == 0:
        raise ShellArithmeticError("division by 0")
    return a - b * _c_div(a, b)


def _pow(a: int, b: int) -> int:
    if b < 0:
        raise ShellArithmeticError("exponent less than 0")
    return pow(a, b, MODULUS)


def _lshift(a: int, b: int) -> int:
    return a << (b % WIDTH)


def _rshift(a: int, b: int) -> int:
    return a >> (b % WIDTH)


BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: _c_div,
    ast.Mod: _c_mod,
    ast.Pow: _pow,
    ast.LShift: _lshift,
    ast.RShift: _rshift,
    ast.BitAnd: operator.and_,
    ast.BitOr: operator.or_,
    ast.BitXor: operator.xor,
}

COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def _translate(expr: str) -> str:
    text = expr.replace("&&", " and ").replace("||", " or ")
    return re.sub(r"!(?!=)", " not ", text)


def evaluate(expr: str, lookup: Callable[[str], Optional[str]]) -> int:
    source = expr.strip()
    if not source:
        return 0
    try:
        tree = ast.parse(_translate(source), mode="eval")
    except (SyntaxError, ValueError):
        raise ShellArithmeticError(f"{source}: syntax error in expression") from None
    except (RecursionError, MemoryError):
        raise ShellArithmeticError(f"{source[:40]}: expression too complex") from None

    def value_of(name: str, depth: int = 0) -> int:
        raw = lookup(name)
        if raw is None or not raw.strip():
            return 0
        if INT_RE.fullmatch(raw):
            try:
                return wrap(int(raw))
            except ValueError:
                raise ShellArithmeticError(f"{raw.strip()}: value too great for base") from None
        if depth < 8 and re.fullmatch(r"\s*[A-Za-z_][A-Za-z0-9_]*\s*", raw):
            return value_of(raw.strip(), depth + 1)
        raise ShellArithmeticError(f"{raw}: syntax error: operand expected")

    def walk(node: ast.AST) -> int:
        if isinstance(node, ast.Constant) and isinstance(node.value, int) and not isinstance(node.value, bool):
            return wrap(node.value)
        if isinstance(node, ast.Name):
            return value_of(node.id)
        if isinstance(node, ast.BinOp) and type(node.op) in BINARY:
            return wrap(BINARY[type(node.op)](walk(node.left), walk(node.right)))
        if isinstance(node, ast.UnaryOp):
            operand = walk(node.operand)
            if isinstance(node.op, ast.USub):
                return wrap(-operand)
            if isinstance(node.op, ast.UAdd):
                return operand
            if isinstance(node.op, ast.Not):
                return int(not operand)
            if isinstance(node.op, ast.Invert):
                return ~operand
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return int(all(walk(v) for v in node.values))
            return int(any(walk(v) for v in node.values))
        if isinstance(node, ast.Compare):
            left = walk(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = walk(comparator)
                if type(op) not in COMPARE or not COMPARE[type(op)](left, right):
                    return 0
                left = right
            return 1
        raise ShellArithmeticError(f"{source}: syntax error in expression")

    try:
        return walk(tree.body)
    except (RecursionError, MemoryError):
        raise ShellArithmeticError(f"{source[:40]}: expression too complex") from None
