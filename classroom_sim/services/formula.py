"""
Outcome Formula Language

Safe interpreter for the arithmetic expressions stored on a ScenarioOutcome.

Only a limited subset of Python's expression grammar is supported:
numeric/boolean/string literals, variable names, arithmetic operators
(+ - * / // % **), unary +/-/not, comparisons, and/or, conditional
expressions (``a if cond else b``), and calls to a fixed set of helper
functions. Attribute access, subscripts, lambdas, comprehensions and any
other construct raise FormulaError.
"""
import ast
import math
import operator
from typing import Any, Callable, Dict, Mapping, Tuple

from classroom_sim.errors import FormulaError

MAX_EXPRESSION_LENGTH = 2000
MAX_EXPONENT = 100


def _clamp(value, low, high):
    return max(low, min(high, value))


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
    "sqrt": math.sqrt,
    "clamp": _clamp,
}

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


class _FormulaEvaluator(ast.NodeVisitor):
    """Evaluates a parsed expression against a read-only namespace."""

    def __init__(self, namespace: Mapping[str, Any], source: str) -> None:
        self._namespace = namespace
        self._source = source

    def _fail(self, message: str) -> FormulaError:
        return FormulaError(f"{message} in formula '{self._source}'")

    def visit(self, node: ast.AST) -> Any:
        method = "visit_" + node.__class__.__name__
        visitor = getattr(self, method, None)
        if visitor is None:
            raise self._fail(f"unsupported expression element '{node.__class__.__name__}'")
        return visitor(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, (bool, int, float, str)):
            return node.value
        raise self._fail(f"unsupported constant type '{type(node.value).__name__}'")

    def visit_Name(self, node: ast.Name) -> Any:
        ident = node.id
        if ident not in self._namespace:
            raise self._fail(f"unknown variable '{ident}'")
        value = self._namespace[ident]
        if value is None:
            raise self._fail(f"variable '{ident}' has no value")
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -_numeric(operand, self)
        if isinstance(node.op, ast.UAdd):
            return +_numeric(operand, self)
        raise self._fail(f"unsupported unary operator '{node.op.__class__.__name__}'")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        func = _BINARY_OPERATORS.get(type(node.op))
        if func is None:
            raise self._fail(f"unsupported operator '{node.op.__class__.__name__}'")
        left = _numeric(self.visit(node.left), self)
        right = _numeric(self.visit(node.right), self)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise self._fail("exponent too large")
        try:
            return func(left, right)
        except ZeroDivisionError:
            raise self._fail("division by zero") from None
        except OverflowError:
            raise self._fail("numeric overflow") from None

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        raise self._fail(f"unsupported boolean operator '{node.op.__class__.__name__}'")

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            func = _COMPARISONS.get(type(op))
            if func is None:
                raise self._fail(f"unsupported comparison '{op.__class__.__name__}'")
            right = self.visit(comparator)
            try:
                if not func(left, right):
                    return False
            except TypeError:
                raise self._fail("cannot compare values of different types") from None
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = node.func.id if isinstance(node.func, ast.Name) else node.func.__class__.__name__
            raise self._fail(f"unknown function '{name}'")
        if node.keywords:
            raise self._fail("keyword arguments are not supported")
        args = [_numeric(self.visit(arg), self) for arg in node.args]
        try:
            return FUNCTIONS[node.func.id](*args)
        except (TypeError, ValueError) as exc:
            raise self._fail(f"bad arguments to {node.func.id}(): {exc}") from None


def _numeric(value: Any, evaluator: _FormulaEvaluator) -> Any:
    # bool is an int subclass; True/False arithmetic is allowed
    if isinstance(value, (int, float)):
        return value
    raise evaluator._fail(f"expected a number, got {type(value).__name__}")


def _check_names(tree: ast.AST, source: str) -> None:
    """Reject anything the evaluator would refuse, before it is stored."""
    allowed = (
        ast.Expression, ast.Constant, ast.Name, ast.Load, ast.UnaryOp, ast.BinOp,
        ast.BoolOp, ast.Compare, ast.IfExp, ast.Call,
        ast.Not, ast.USub, ast.UAdd, ast.And, ast.Or,
    ) + tuple(_BINARY_OPERATORS) + tuple(_COMPARISONS)
    for node in ast.walk(tree):
        if not isinstance(node, allowed):
            raise FormulaError(
                f"unsupported expression element '{node.__class__.__name__}' in formula '{source}'"
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                raise FormulaError(f"unknown function in formula '{source}'")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise FormulaError(f"invalid name '{node.id}' in formula '{source}'")


def compile_expression(source: Any) -> ast.Expression:
    """Parse and statically check one expression."""
    if isinstance(source, bool) or not isinstance(source, (str, int, float)):
        raise FormulaError(f"formula must be a string or number, got {type(source).__name__}")
    text = str(source).strip()
    if not text:
        raise FormulaError("formula cannot be empty")
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise FormulaError("formula is too long")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"invalid formula syntax '{text}': {exc.msg}") from None
    _check_names(tree, text)
    return tree


def evaluate_expression(source: Any, namespace: Mapping[str, Any]) -> Any:
    tree = compile_expression(source)
    return _FormulaEvaluator(namespace, str(source).strip()).visit(tree)


def compile_formula(formula: Any) -> Dict[str, ast.Expression]:
    """
    Validate a whole output-name -> expression mapping.

    Returns the compiled trees keyed by output name. Raises FormulaError
    listing the first offending output.
    """
    if not isinstance(formula, Mapping):
        raise FormulaError("formula must be a mapping of output name to expression")
    compiled = {}
    for name, source in formula.items():
        if not isinstance(name, str) or not name.isidentifier():
            raise FormulaError(f"invalid output name '{name}'")
        try:
            compiled[name] = compile_expression(source)
        except FormulaError as exc:
            raise FormulaError(f"{name}: {exc.message}", details={"output": name}) from None
    return compiled


def referenced_names(formula: Mapping[str, Any]) -> Tuple[str, ...]:
    """Variable names used across a formula, in first-seen order."""
    seen = []
    for tree in compile_formula(formula).values():
        for node in ast.walk(tree):
            if isinstance(node, ast.Name) and node.id not in FUNCTIONS and node.id not in seen:
                seen.append(node.id)
    return tuple(seen)
