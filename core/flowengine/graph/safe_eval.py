"""Safe expression evaluation for condition nodes.

Uses Python's ast module to parse expressions into a restricted subset and
walks the tree directly. This is NOT eval(): nothing is compiled or executed
by the host interpreter, and only whitelisted constructs are accepted.

Two phases:
1. Parse-time validation: reject forbidden constructs (cached per expression)
2. Evaluation: walk the validated AST against the evaluation scope

Expressions authored in the workflow editor use a JavaScript-flavoured
syntax, so ``&&``, ``||``, ``!``, ``===``, ``!==``, ``true``, ``false`` and
``null`` are normalised before parsing (outside string literals only).
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import Any

MAX_EXPRESSION_LENGTH = 2000


class ExpressionError(Exception):
    """Base class for expression failures."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression cannot be parsed."""


class ExpressionSecurityError(ExpressionError):
    """Raised when an expression contains forbidden constructs."""


class ExpressionEvaluationError(ExpressionError):
    """Raised when a valid expression fails against the given scope.

    The original exception is chained via __cause__.
    """


_COMPARISON_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
}

_LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.IfExp,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Call,
    *_COMPARISON_OPS,
    *_BINARY_OPS,
    *_UNARY_OPS,
)


def normalize_expression(expression: str) -> str:
    """Translate editor (JavaScript-style) operators into Python syntax."""
    out: list[str] = []
    quote: str | None = None
    i = 0
    n = len(expression)

    while i < n:
        ch = expression[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(expression[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue

        three = expression[i : i + 3]
        two = expression[i : i + 2]
        if three == "===":
            out.append("==")
            i += 3
        elif three == "!==":
            out.append("!=")
            i += 3
        elif two == "&&":
            out.append(" and ")
            i += 2
        elif two == "||":
            out.append(" or ")
            i += 2
        elif ch == "!" and two != "!=":
            out.append(" not ")
            i += 1
        else:
            out.append(ch)
            i += 1

    return "".join(out).strip()


def _check_tree(tree: ast.AST) -> list[str]:
    errors: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            errors.append(f"Forbidden construct: {type(node).__name__}")
        elif isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            errors.append(f"Forbidden attribute access: {node.attr!r}")
        elif isinstance(node, ast.Subscript) and isinstance(node.slice, ast.Slice):
            errors.append("Slice syntax is forbidden")
        elif isinstance(node, ast.Call):
            if not (isinstance(node.func, ast.Name) and node.func.id in _SAFE_FUNCTIONS):
                errors.append(f"Forbidden function call: {ast.unparse(node.func)}")
            if node.keywords:
                errors.append("Keyword arguments are not allowed")
    return errors


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and validate an expression. Raises ExpressionError subclasses."""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionSyntaxError("Expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSecurityError(
            f"Expression exceeds {MAX_EXPRESSION_LENGTH} characters"
        )

    source = normalize_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionSyntaxError(f"Invalid expression {expression!r}: {e.msg}") from e

    errors = _check_tree(tree)
    if errors:
        raise ExpressionSecurityError("; ".join(errors))
    return tree


def validate_expression(expression: str) -> list[str]:
    """Return a list of problems with the expression (empty if it is acceptable)."""
    try:
        compile_expression(expression)
    except ExpressionError as e:
        return [str(e)]
    return []


class _Evaluator:
    """Walks a validated AST against a read-only scope."""

    def __init__(self, scope: Mapping[str, Any]):
        self.scope = scope

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionSecurityError(f"Forbidden construct: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        if node.id in self.scope:
            return self.scope[node.id]
        raise ExpressionEvaluationError(f"Unknown name: {node.id!r}")

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        value = self.eval(node.value)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise ExpressionEvaluationError(f"Missing property: {node.attr!r}")
        if node.attr == "length" and isinstance(value, Sequence):
            return len(value)
        raise ExpressionEvaluationError(
            f"Cannot read property {node.attr!r} of {type(value).__name__}"
        )

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        key = self.eval(node.slice)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionEvaluationError(f"Cannot index with {key!r}: {e}") from e

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            raise ExpressionEvaluationError(str(e)) from e

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError, OverflowError) as e:
            raise ExpressionEvaluationError(str(e)) from e

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionEvaluationError(str(e)) from e
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.eval(e) for e in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.eval(e) for e in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        return {
            self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values, strict=True) if k
        }

    def _eval_Call(self, node: ast.Call) -> Any:
        func = _SAFE_FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        args = [self.eval(a) for a in node.args]
        try:
            return func(*args)
        except (TypeError, ValueError) as e:
            raise ExpressionEvaluationError(str(e)) from e


def safe_eval(expression: str, scope: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression against a scope of names.

    Example:
        safe_eval("score > 80 && status == 'ok'", {"score": 91, "status": "ok"})  # True
        safe_eval("fetch.data.items.length > 0", {"fetch": {...}})
    """
    tree = compile_expression(expression)
    return _Evaluator(scope).eval(tree)
