"""agentflow.core.conditions

Guard and break-condition expressions.

Conditions are small Python-like expressions evaluated against the run
context, for example:

    category == 'billing'
    triage.category in ['refund', 'invoice'] and iteration < 3
    len(review) > 0

Expressions are parsed with `ast` and walked by a whitelist evaluator; nothing
is ever passed to `eval`. Unknown names resolve to `None` so a guard over a
binding that was never produced is simply false.
"""

from __future__ import annotations

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import ConditionError

# Resolver contract: (found, value).
Resolver = Callable[[str], Tuple[bool, Any]]

_CATCH_ALL = {"", "else", "otherwise", "default"}
_CONSTANTS = {"true": True, "false": False, "null": None, "none": None}

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_ORDERING: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item).lower() in container.lower()
    try:
        return item in container
    except TypeError:
        return False


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": lambda v: len(v) if v is not None else 0,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "lower": lambda v: str(v).lower() if v is not None else "",
    "upper": lambda v: str(v).upper() if v is not None else "",
    "contains": _contains,
}


def is_catch_all(expression: Optional[str]) -> bool:
    return expression is None or expression.strip().lower() in _CATCH_ALL


@lru_cache(maxsize=512)
def compile_condition(expression: str) -> ast.Expression:
    """Parse an expression, rejecting syntax the evaluator does not support."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionError(expression, f"syntax error: {e.msg}", cause=e) from e
    for node in ast.walk(tree):
        if isinstance(node, (ast.Lambda, ast.ListComp, ast.DictComp, ast.SetComp, ast.GeneratorExp, ast.NamedExpr)):
            raise ConditionError(expression, f"unsupported construct {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ConditionError(expression, "only whitelisted functions may be called")
            if node.keywords:
                raise ConditionError(expression, "keyword arguments are not supported")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ConditionError(expression, "private attribute access is not allowed")
    return tree


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Coerce numeric strings when compared against numbers."""
    if isinstance(left, (int, float)) and not isinstance(left, bool) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(right, (int, float)) and not isinstance(right, bool) and isinstance(left, str):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _lookup(value: Any, key: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(key)
    if isinstance(value, (list, tuple, str)) and isinstance(key, int):
        try:
            return value[key]
        except IndexError:
            return None
    return getattr(value, str(key), None) if isinstance(key, str) and not key.startswith("_") else None


class ConditionEvaluator:
    """Evaluates compiled conditions with a caller-provided name resolver."""

    def __init__(self, resolver: Resolver):
        self._resolver = resolver

    def evaluate(self, expression: Optional[str]) -> bool:
        if is_catch_all(expression):
            return True
        tree = compile_condition(expression)  # type: ignore[arg-type]
        try:
            return bool(self._eval(tree.body))
        except ConditionError:
            raise
        except Exception as e:
            raise ConditionError(expression or "", f"evaluation failed: {e}", cause=e) from e

    def value(self, expression: str) -> Any:
        """Evaluate an expression and return its raw value (used for `$ref` arguments)."""
        return self._eval(compile_condition(expression).body)

    def _resolve_dotted(self, dotted: str) -> Tuple[bool, Any]:
        found, value = self._resolver(dotted)
        if found:
            return True, value
        return False, None

    def _dotted_name(self, node: ast.AST) -> Optional[str]:
        if isinstance(node, ast.Name):
            return node.id
        if isinstance(node, ast.Attribute):
            base = self._dotted_name(node.value)
            return f"{base}.{node.attr}" if base else None
        return None

    def _eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            lowered = node.id.lower()
            if lowered in _CONSTANTS:
                found, value = self._resolver(node.id)
                return value if found else _CONSTANTS[lowered]
            return self._resolve_dotted(node.id)[1]
        if isinstance(node, ast.Attribute):
            dotted = self._dotted_name(node)
            if dotted is not None:
                found, value = self._resolve_dotted(dotted)
                if found:
                    return value
            return _lookup(self._eval(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return _lookup(self._eval(node.value), self._eval(node.slice))
        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            return [self._eval(e) for e in node.elts]
        if isinstance(node, ast.Dict):
            return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values) if k is not None}
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for v in node.values:
                    result = self._eval(v)
                    if not result:
                        return result
                return result
            result = False
            for v in node.values:
                result = self._eval(v)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        if isinstance(node, ast.BinOp):
            fn = _BIN_OPS.get(type(node.op))
            if fn is not None:
                return fn(self._eval(node.left), self._eval(node.right))
        if isinstance(node, ast.Compare):
            left = self._eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            return _FUNCTIONS[node.func.id](*[self._eval(a) for a in node.args])
        raise ConditionError(ast.unparse(node), f"unsupported expression {type(node).__name__}")

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            left, right = _coerce_pair(left, right)
            return left == right
        if isinstance(op, ast.NotEq):
            left, right = _coerce_pair(left, right)
            return left != right
        if isinstance(op, ast.In):
            return _contains(right, left)
        if isinstance(op, ast.NotIn):
            return not _contains(right, left)
        if isinstance(op, ast.Is):
            return left is right
        if isinstance(op, ast.IsNot):
            return left is not right
        fn = _ORDERING[type(op)]
        left, right = _coerce_pair(left, right)
        try:
            return bool(fn(left, right))
        except TypeError:
            return False


def validate_condition(expression: Optional[str]) -> None:
    """Raise `ConditionError` if `expression` does not parse."""
    if not is_catch_all(expression):
        compile_condition(expression)  # type: ignore[arg-type]


def evaluate_condition(expression: Optional[str], variables: Mapping[str, Any]) -> bool:
    """Evaluate against a plain mapping (dotted names walk nested dicts)."""

    def _resolve(name: str) -> Tuple[bool, Any]:
        if name in variables:
            return True, variables[name]
        head, _, rest = name.partition(".")
        if rest and head in variables:
            value: Any = variables[head]
            for part in rest.split("."):
                value = _lookup(value, part)
            return True, value
        return False, None

    return ConditionEvaluator(_resolve).evaluate(expression)
