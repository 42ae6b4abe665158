"""
Restricted predicate language for conditional rules and source selectors.

Predicates in configuration use a fixed subset of Python expression syntax.
This module validates expressions against a whitelist of AST node types and
evaluates them by walking the tree.  Nothing is ever passed to ``eval``.

Allowed:
  - Comparisons: <, <=, >, >=, ==, !=, is, is not, in, not in
  - Logical: and, or, not
  - Field access: record.field_name or record["field name"]
  - Literals: numbers, strings, booleans, None, lists/tuples
  - Functions: len(), abs(), upper(), lower(), startswith(), endswith()

Rejected:
  - imports, attribute chains, arbitrary names and calls, lambda,
    arithmetic, comprehensions

Comparison semantics: when one side is numeric, both sides are compared as
Decimal (source values usually arrive as strings).  A comparison that cannot
be made (e.g. ``None < 5``) is false rather than an error.
"""

import ast
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Mapping

from tranche_kernel.exceptions import InvalidPredicateError

RECORD_ROOT = "record"

ALLOWED_FUNCTIONS: frozenset[str] = frozenset(
    {"len", "abs", "upper", "lower", "startswith", "endswith"}
)

ALLOWED_NAMES: frozenset[str] = frozenset({"True", "False", "None", RECORD_ROOT})

_COMPARE_OPS = (
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
)


@dataclass(frozen=True)
class PredicateASTError:
    """A validation error found in a predicate expression."""

    expression: str
    message: str
    node_type: str = ""


def validate_predicate(expression: str) -> list[PredicateASTError]:
    """Validate a predicate against the restricted AST.

    Returns a list of errors. Empty list means the expression is valid.
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        return [PredicateASTError(expression, f"Syntax error: {e.msg}")]

    errors: list[PredicateASTError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(
    node: ast.AST, expression: str, errors: list[PredicateASTError]
) -> None:
    def reject(message: str) -> None:
        errors.append(PredicateASTError(expression, message, type(node).__name__))

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            reject(f"Disallowed unary operator: {type(node.op).__name__}")
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if not isinstance(op, _COMPARE_OPS):
                reject(f"Disallowed comparison: {type(op).__name__}")

    elif isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id in ALLOWED_FUNCTIONS:
            if node.keywords:
                reject("Keyword arguments are not allowed")
            for arg in node.args:
                _validate_node(arg, expression, errors)
        else:
            reject(f"Disallowed function call: {_get_name(node.func)}")

    elif isinstance(node, ast.Attribute):
        if not (isinstance(node.value, ast.Name) and node.value.id == RECORD_ROOT):
            reject(
                f"Disallowed attribute access: {_get_name(node)}. "
                f"Only {RECORD_ROOT}.field_name is allowed."
            )

    elif isinstance(node, ast.Subscript):
        if not (
            isinstance(node.value, ast.Name)
            and node.value.id == RECORD_ROOT
            and isinstance(node.slice, ast.Constant)
            and isinstance(node.slice.value, str)
        ):
            reject(f'Only {RECORD_ROOT}["field name"] subscripts are allowed')

    elif isinstance(node, ast.Name):
        if node.id not in ALLOWED_NAMES:
            reject(f"Disallowed name: {node.id}")

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            reject(f"Disallowed constant type: {type(node.value).__name__}")

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_node(elt, expression, errors)

    else:
        reject(f"Disallowed AST node type: {type(node).__name__}")


def _get_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    return type(node).__name__


@lru_cache(maxsize=512)
def compile_predicate(expression: str) -> ast.Expression:
    """Parse and validate once; raise InvalidPredicateError on any violation."""
    errors = validate_predicate(expression)
    if errors:
        raise InvalidPredicateError(expression, [e.message for e in errors])
    return ast.parse(expression, mode="eval")


def evaluate_predicate(expression: str, record: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against one source record."""
    tree = compile_predicate(expression)
    return bool(_eval(tree.body, record))


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _eval(node: ast.AST, record: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, record) for v in node.values)
        return any(_eval(v, record) for v in node.values)

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, record)
        if isinstance(node.op, ast.Not):
            return not operand
        number = _to_decimal(operand)
        return -number if number is not None else None

    if isinstance(node, ast.Compare):
        left = _eval(node.left, record)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, record)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        args = [_eval(a, record) for a in node.args]
        return _call(node.func.id, args)

    if isinstance(node, ast.Attribute):
        return record.get(node.attr)

    if isinstance(node, ast.Subscript):
        return record.get(node.slice.value)

    if isinstance(node, ast.Name):
        return {"True": True, "False": False, "None": None}.get(node.id, record)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(e, record) for e in node.elts]

    raise InvalidPredicateError(ast.unparse(node), ["unsupported node"])


def _call(name: str, args: list[Any]) -> Any:
    match name:
        case "len":
            return len(args[0]) if args and args[0] is not None else 0
        case "abs":
            number = _to_decimal(args[0]) if args else None
            return abs(number) if number is not None else None
        case "upper":
            return str(args[0]).upper() if args and args[0] is not None else None
        case "lower":
            return str(args[0]).lower() if args and args[0] is not None else None
        case "startswith":
            return args[0] is not None and str(args[0]).startswith(str(args[1]))
        case "endswith":
            return args[0] is not None and str(args[0]).endswith(str(args[1]))
    raise InvalidPredicateError(name, [f"Disallowed function call: {name}"])


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def _normalize(left: Any, right: Any) -> tuple[Any, Any]:
    if _is_number(left) or _is_number(right):
        dl, dr = _to_decimal(left), _to_decimal(right)
        if dl is not None and dr is not None:
            return dl, dr
    return left, right


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    if isinstance(op, (ast.In, ast.NotIn)):
        if isinstance(right, (list, tuple)):
            found = any(_compare(ast.Eq(), left, member) for member in right)
        else:
            # Substring test against a scalar field
            found = left is not None and right is not None and str(left) in str(right)
        return found if isinstance(op, ast.In) else not found

    left, right = _normalize(left, right)
    try:
        match op:
            case ast.Eq():
                return left == right
            case ast.NotEq():
                return left != right
            case ast.Lt():
                return left < right
            case ast.LtE():
                return left <= right
            case ast.Gt():
                return left > right
            case ast.GtE():
                return left >= right
    except TypeError:
        return False
    return False
