"""
Formula evaluation for expression-derived transitions.

The compartment update only depends on the `FormulaEvaluator` interface, so the expression
engine can be swapped without touching Compartment. The default `AstEvaluator` parses the
formula with Python's `ast` module and walks a whitelisted subset of the tree: numeric
literals, names, arithmetic and comparison operators, conditional expressions and calls to a
fixed set of math functions. ``^`` is accepted as exponentiation.

Example::

    >>> evaluate("beta * S * I / N", ["beta", "N"], [0.5, 1000.0], {"S": 990.0, "I": 10.0})
    4.95
"""

import ast
import math
import operator
from abc import ABC
from abc import abstractmethod
from functools import lru_cache

import numpy as np


class FormulaError(ValueError):
    """A formula is malformed, uses a forbidden construct, or references an unknown name."""

    def __init__(self, formula: str, reason: str):
        self.formula = formula
        self.reason = reason
        super().__init__(f"Formula '{formula}': {reason}")


class FormulaEvaluator(ABC):
    """Interface to the expression engine used by expression-derived transitions."""

    @abstractmethod
    def evaluate(self, expression: str, param_names, param_values, comp_values: dict) -> float:
        """
        Evaluate `expression`.

        Parameters:

            expression (str): The formula.
            param_names (sequence of str): Global parameter names.
            param_values (sequence of float): Global parameter values, index-aligned with param_names.
            comp_values (dict): Compartment name to population.

        Returns:

            float: The value of the formula.

        Raises:

            FormulaError: On syntax errors, forbidden constructs, unknown names or a non-finite result.
        """


_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_FUNCTIONS = {
    "abs": abs,
    "min": min,
    "max": max,
    "exp": np.exp,
    "log": np.log,
    "log10": np.log10,
    "log2": np.log2,
    "sqrt": np.sqrt,
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
    "tanh": np.tanh,
    "floor": np.floor,
    "ceil": np.ceil,
    "round": np.round,
}

_CONSTANTS = {
    "pi": math.pi,
    "e": math.e,
    "_pi": math.pi,
    "_e": math.e,
}


@lru_cache(maxsize=1024)
def _parse(expression: str) -> ast.Expression:
    source = expression.replace("^", "**")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise FormulaError(expression, f"syntax error ({e.msg})") from e
    return tree


class AstEvaluator(FormulaEvaluator):
    """Evaluates formulas by walking a whitelisted Python AST."""

    def evaluate(self, expression: str, param_names, param_values, comp_values: dict) -> float:
        if len(param_names) != len(param_values):
            raise ValueError(f"Got {len(param_names)} parameter names but {len(param_values)} values.")

        namespace = dict(_CONSTANTS)
        namespace.update(zip(param_names, param_values))
        namespace.update(comp_values)

        tree = _parse(expression)
        with np.errstate(all="ignore"):
            try:
                value = float(self._eval(tree.body, namespace, expression))
            except OverflowError as e:
                # integer results too large for a float
                raise FormulaError(expression, "result is not finite") from e

        if not math.isfinite(value):
            raise FormulaError(expression, f"result is not finite ({value})")

        return value

    def _eval(self, node, namespace, expression):
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise FormulaError(expression, f"unsupported literal {node.value!r}")
            return node.value

        if isinstance(node, ast.Name):
            if node.id not in namespace:
                raise FormulaError(expression, f"unknown name '{node.id}'")
            return namespace[node.id]

        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
            left = self._eval(node.left, namespace, expression)
            right = self._eval(node.right, namespace, expression)
            try:
                result = _BINARY[type(node.op)](left, right)
            except ZeroDivisionError as e:
                raise FormulaError(expression, "division by zero") from e
            except OverflowError as e:
                raise FormulaError(expression, "result is not finite") from e
            # negative base with a fractional exponent
            if isinstance(result, complex):
                raise FormulaError(expression, "result is not a real number")
            return result

        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY:
            return _UNARY[type(node.op)](self._eval(node.operand, namespace, expression))

        if isinstance(node, ast.Compare) and all(type(op) in _COMPARE for op in node.ops):
            left = self._eval(node.left, namespace, expression)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, namespace, expression)
                if not _COMPARE[type(op)](left, right):
                    return 0.0
                left = right
            return 1.0

        if isinstance(node, ast.BoolOp):
            values = [bool(self._eval(v, namespace, expression)) for v in node.values]
            return float(all(values) if isinstance(node.op, ast.And) else any(values))

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, namespace, expression):
                return self._eval(node.body, namespace, expression)
            return self._eval(node.orelse, namespace, expression)

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                name = node.func.id if isinstance(node.func, ast.Name) else ast.dump(node.func)
                raise FormulaError(expression, f"unknown function '{name}'")
            if node.keywords:
                raise FormulaError(expression, "keyword arguments are not supported")
            args = [self._eval(arg, namespace, expression) for arg in node.args]
            try:
                return _FUNCTIONS[node.func.id](*args)
            except TypeError as e:
                raise FormulaError(expression, f"bad arguments to '{node.func.id}'") from e
            except OverflowError as e:
                raise FormulaError(expression, "result is not finite") from e

        raise FormulaError(expression, f"unsupported construct {type(node).__name__}")


_default = AstEvaluator()


def default_evaluator() -> FormulaEvaluator:
    """Return the shared AstEvaluator."""
    return _default


def evaluate(expression: str, param_names, param_values, comp_values: dict) -> float:
    """Evaluate `expression` with the default evaluator. See `FormulaEvaluator.evaluate`."""
    return _default.evaluate(expression, param_names, param_values, comp_values)
