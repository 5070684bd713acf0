"""Safe boolean expressions over story flags.

Expressions are parsed with :mod:`ast` and walked by a small interpreter that
only understands a whitelisted subset: literals, ``flags.name`` and
``flags["name"]`` lookups, ``history``, comparisons, arithmetic, ``and`` /
``or`` / ``not`` and membership tests. Nothing is ever passed to ``eval``.

Story files exported by JavaScript tooling use ``&&``, ``||``, ``!``,
``===`` and ``true``/``false``/``null``; those spellings are normalized before
parsing.
"""
from __future__ import annotations

import ast
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Sequence

from storyloom.services.errors import ConditionExpressionError

_JS_TOKENS: Sequence[tuple[re.Pattern[str], str]] = (
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!=="), " != "),
    (re.compile(r"==="), " == "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
)

_STRING_LITERAL = re.compile(r"""("(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')""")

_ALLOWED_NAMES = {"flags", "history"}

_COMPARATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: right is not None and left in right,
    ast.NotIn: lambda left, right: right is None or left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ORDERING = (ast.Lt, ast.LtE, ast.Gt, ast.GtE)

_BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript spellings to Python, leaving string literals alone."""
    # split() with a capturing group puts the literals at odd indexes.
    parts = _STRING_LITERAL.split(expression.strip())
    for index in range(0, len(parts), 2):
        for pattern, replacement in _JS_TOKENS:
            parts[index] = pattern.sub(replacement, parts[index])
    return "".join(parts).strip()


@lru_cache(maxsize=128)
def parse_expression(expression: str) -> ast.Expression:
    """Parse and whitelist-check an expression, caching the tree."""
    if not expression or not expression.strip():
        raise ConditionExpressionError("Empty or whitespace-only condition expression.", expression)
    normalized = normalize_expression(expression)
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise ConditionExpressionError(f"Invalid expression syntax: {expression}", expression) from exc
    for node in ast.walk(tree):
        _check_node(node, expression)
    return tree


def evaluate_expression(expression: str, flags: Mapping[str, Any], history: Sequence[str] = ()) -> bool:
    """Evaluate ``expression`` against copies of the flag ledger and history."""
    tree = parse_expression(expression)
    context = {"flags": dict(flags), "history": list(history)}
    try:
        return bool(_eval(tree.body, context))
    except ConditionExpressionError:
        raise
    except Exception as exc:  # arithmetic/type errors raised by user data
        raise ConditionExpressionError(f"Runtime error evaluating: {expression}", expression) from exc


def validate_expression(expression: str) -> tuple[bool, str | None]:
    """Return ``(True, None)`` for a usable expression, else ``(False, reason)``."""
    try:
        parse_expression(expression)
    except ConditionExpressionError as exc:
        return False, str(exc)
    return True, None


def get_referenced_flags(expression: str) -> List[str]:
    """Return flag names read by the expression, in first-seen order."""
    tree = parse_expression(expression)
    names: List[str] = []
    for node in ast.walk(tree):
        name = _flag_name(node)
        if name is not None and name not in names:
            names.append(name)
    return names


def _flag_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name) and node.value.id == "flags":
        return node.attr
    if (
        isinstance(node, ast.Subscript)
        and isinstance(node.value, ast.Name)
        and node.value.id == "flags"
        and isinstance(node.slice, ast.Constant)
        and isinstance(node.slice.value, str)
    ):
        return node.slice.value
    return None


def _check_node(node: ast.AST, expression: str) -> None:
    allowed = (
        ast.Expression,
        ast.BoolOp,
        ast.And,
        ast.Or,
        ast.UnaryOp,
        ast.Not,
        ast.USub,
        ast.UAdd,
        ast.Compare,
        ast.BinOp,
        ast.Constant,
        ast.Name,
        ast.Load,
        ast.Attribute,
        ast.Subscript,
        ast.List,
        ast.Tuple,
        *_COMPARATORS.keys(),
        *_BINARY_OPERATORS.keys(),
    )
    if not isinstance(node, allowed):
        raise ConditionExpressionError(
            f"Unsupported construct '{type(node).__name__}' in expression: {expression}", expression
        )
    if isinstance(node, ast.Name) and node.id not in _ALLOWED_NAMES:
        raise ConditionExpressionError(f"Unknown name '{node.id}' in expression: {expression}", expression)
    if isinstance(node, ast.Attribute):
        if not (isinstance(node.value, ast.Name) and node.value.id == "flags"):
            raise ConditionExpressionError(
                f"Attribute access is only allowed on flags: {expression}", expression
            )
        if node.attr.startswith("_"):
            raise ConditionExpressionError(f"Private attribute in expression: {expression}", expression)
    if isinstance(node, ast.Subscript) and _flag_name(node) is None:
        raise ConditionExpressionError(
            f"Subscripts must be string lookups on flags: {expression}", expression
        )


def _eval(node: ast.AST, context: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return context[node.id]
    flag_name = _flag_name(node)
    if flag_name is not None:
        return context["flags"].get(flag_name)
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, context)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, context)
            if result:
                return result
        return result
    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand
    if isinstance(node, ast.BinOp):
        return _BINARY_OPERATORS[type(node.op)](_eval(node.left, context), _eval(node.right, context))
    if isinstance(node, ast.Compare):
        left = _eval(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, context)
            # Missing flags compare like JavaScript's undefined: never ordered.
            if isinstance(op, _ORDERING) and (left is None or right is None):
                return False
            if not _COMPARATORS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(item, context) for item in node.elts]
    raise ConditionExpressionError(f"Unsupported construct '{type(node).__name__}'.")
