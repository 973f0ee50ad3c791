"""Restricted expression evaluator for filters, eval conditions and checks.

Expressions are boolean logic and comparisons over named data, e.g.
``payload.from == "a@x.com" && payload.subject.includes("invoice")``.
JavaScript-style operators are accepted and rewritten to Python syntax,
the result is parsed with :mod:`ast`, and only a whitelisted subset of node
types is interpreted. Nothing is ever passed to ``eval``.
"""

from __future__ import annotations

import ast
import keyword
import logging
import operator
import re
from functools import lru_cache
from typing import Any

from cortex.errors import ExpressionError

logger = logging.getLogger(__name__)

_STRING_RE = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")
_KEYWORD_ATTR_RE = re.compile(r"\.(" + "|".join(keyword.kwlist) + r")\b")

_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


def _method_includes(recv: Any, arg: Any) -> bool:
    return arg in recv


_METHODS = {
    "includes": _method_includes,
    "contains": _method_includes,
    "startsWith": lambda recv, arg: recv.startswith(arg),
    "startswith": lambda recv, arg: recv.startswith(arg),
    "endsWith": lambda recv, arg: recv.endswith(arg),
    "endswith": lambda recv, arg: recv.endswith(arg),
    "toLowerCase": lambda recv: recv.lower(),
    "lower": lambda recv: recv.lower(),
    "toUpperCase": lambda recv: recv.upper(),
    "upper": lambda recv: recv.upper(),
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Call,
    *_COMPARE_OPS,
)


def _normalize_code(code: str) -> str:
    code = code.replace("===", "==").replace("!==", "!=")
    code = code.replace("&&", " and ").replace("||", " or ")
    code = re.sub(r"!(?!=)", " not ", code)
    return _KEYWORD_ATTR_RE.sub(lambda m: f'["{m.group(1)}"]', code)


def normalize(expression: str) -> str:
    """Rewrite JavaScript-style operators outside string literals."""
    parts = _STRING_RE.split(expression)
    # split() with one capture group alternates code, string, code, ...
    return "".join(p if i % 2 else _normalize_code(p) for i, p in enumerate(parts)).strip()


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and validate *expression*.

    Raises:
        ExpressionError: on a syntax error or any non-whitelisted construct.
    """
    if not expression or not expression.strip():
        raise ExpressionError("Empty expression", expression)
    try:
        tree = ast.parse(normalize(expression), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression: {exc.msg}", expression) from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Forbidden syntax in expression: {type(node).__name__}", expression
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Attribute) or node.func.attr not in _METHODS:
                raise ExpressionError("Only string/list helper methods may be called", expression)
            if node.keywords:
                raise ExpressionError("Keyword arguments are not allowed", expression)
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError("Private attributes are not allowed", expression)
    return tree


def evaluate(expression: str, names: dict[str, Any]) -> bool:
    """Evaluate *expression* against *names* and return its truthiness.

    Missing fields resolve to None; comparisons between incompatible types
    are False rather than errors.
    """
    tree = compile_expression(expression)
    return bool(_Interpreter(names).visit(tree.body))


class _Interpreter:
    """Walks a validated expression tree."""

    def __init__(self, names: dict[str, Any]) -> None:
        self._names = names

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self._names:
                return self._names[node.id]
            if node.id in _LITERALS:
                return _LITERALS[node.id]
            return None
        if isinstance(node, ast.Attribute):
            return self._lookup(self.visit(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return self._lookup(self.visit(node.value), self.visit(node.slice))
        if isinstance(node, ast.List | ast.Tuple):
            return [self.visit(e) for e in node.elts]
        if isinstance(node, ast.BoolOp):
            return self._bool_op(node)
        if isinstance(node, ast.UnaryOp):
            value = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not value
            return -value if isinstance(value, int | float) else None
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.Call):
            return self._call(node)
        raise ExpressionError(f"Unsupported node: {type(node).__name__}")

    @staticmethod
    def _lookup(container: Any, key: Any) -> Any:
        if container is None:
            return None
        if key == "length" and isinstance(container, str | list):
            return len(container)
        if isinstance(container, dict):
            try:
                return container.get(key)
            except TypeError:  # unhashable key
                return None
        if isinstance(container, list | str) and isinstance(key, int):
            return container[key] if -len(container) <= key < len(container) else None
        return None

    def _bool_op(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value_node in node.values:
                result = self.visit(value_node)
                if not result:
                    return result
            return result
        result = False
        for value_node in node.values:
            result = self.visit(value_node)
            if result:
                return result
        return result

    def _compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            try:
                ok = _COMPARE_OPS[type(op)](left, right)
            except TypeError:
                return False
            if not ok:
                return False
            left = right
        return True

    def _call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Attribute):
            raise ExpressionError("Only string/list helper methods may be called")
        receiver = self.visit(node.func.value)
        if receiver is None:
            return None
        args = [self.visit(a) for a in node.args]
        try:
            return _METHODS[node.func.attr](receiver, *args)
        except (TypeError, AttributeError):
            return None
