"""
Sandboxed expression interpreter for user-authored rule content.

Rule expressions are written by study builders, so they are never handed to
``eval``. They are parsed with :mod:`ast`, checked against a whitelist of node
types, then interpreted node by node under three budgets: source length,
number of evaluation steps and a wall-clock deadline. Anything outside the
whitelist raises :class:`ExpressionError`, which callers treat as a fail-open
pass.
"""

import ast
import math
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

MAX_SEQUENCE_LENGTH = 10_000
MAX_EXPONENT = 64
MAX_RESULT_BITS = 4_096

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Pow,
    ast.BitAnd,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.IfExp,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
)


class ExpressionError(Exception):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        self.message = message
        super().__init__(f"{message}: {expression!r}")


class ExpressionBudgetExceeded(ExpressionError):
    """Raised when an expression exceeds its length, step or time budget."""


class RecordView(Mapping):
    """
    Read-only view over submitted form data.

    Expressions reach nested form data through attribute or subscript access
    (``data.vitals.weight`` or ``data["vitals"]["weight"]``). Missing keys read
    as ``None`` so an absent field behaves like an unanswered one.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any]):
        self._data = dict(data)

    def __getitem__(self, key: str) -> Any:
        return wrap_value(self._data.get(key))

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"RecordView({self._data!r})"


def wrap_value(value: Any) -> Any:
    """Wrap mappings (recursively, on access) so expressions cannot mutate them."""
    if isinstance(value, RecordView):
        return value
    if isinstance(value, Mapping):
        return RecordView(value)
    if isinstance(value, list | tuple):
        return tuple(wrap_value(item) for item in value)
    return value


_JS_TOKEN_RE = re.compile(
    r"""
    (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>===|!==|&&|\|\||!(?!=))
    |(?P<word>[A-Za-z_$][A-Za-z0-9_$]*)
    """,
    re.VERBOSE,
)

_JS_OPERATORS = {"===": " == ", "!==": " != ", "&&": " and ", "||": " or ", "!": " not "}
_JS_WORDS = {"null": "None", "undefined": "None", "true": "True", "false": "False"}


def translate_js(expression: str) -> str:
    """
    Rewrite JavaScript-flavoured boolean syntax into Python syntax.

    Handles ``&& || ! === !==`` and the ``null undefined true false``
    literals. String literals are copied through untouched.
    """

    def replace(match: re.Match) -> str:
        if match.group("string"):
            return match.group("string")
        if match.group("op"):
            return _JS_OPERATORS[match.group("op")]
        word = match.group("word")
        return _JS_WORDS.get(word, word)

    return _JS_TOKEN_RE.sub(replace, expression).strip()


class ExpressionSandbox:
    """
    Whitelisting AST interpreter with length, step and time budgets.

    Example:
        sandbox = ExpressionSandbox(max_steps=1000, timeout_ms=50)
        sandbox.evaluate("value > 18 and data.consent", {"value": 21, "data": {...}})
    """

    def __init__(
        self,
        max_length: int = 2_000,
        max_steps: int = 10_000,
        timeout_ms: int = 250,
        match_timeout_ms: int = 100,
    ):
        self.max_length = max_length
        self.max_steps = max_steps
        self.timeout_ms = timeout_ms
        # Format rules run their regexes under this budget
        self.match_timeout_ms = match_timeout_ms

    def compile(self, expression: str, functions: Mapping[str, Callable] | None = None) -> ast.Expression:
        """
        Parse and statically check an expression.

        Raises:
            ExpressionBudgetExceeded: If the source is longer than max_length
            ExpressionError: If it does not parse or uses a disallowed construct
        """
        if len(expression) > self.max_length:
            raise ExpressionBudgetExceeded(expression[:80], "Expression exceeds maximum length")
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except (SyntaxError, ValueError, RecursionError, MemoryError) as e:
            raise ExpressionError(expression, f"Syntax error ({type(e).__name__})")

        functions = functions or {}
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise ExpressionError(expression, f"Unsupported construct {type(node).__name__}")
            if isinstance(node, ast.Name) and node.id.startswith("_"):
                raise ExpressionError(expression, f"Name {node.id!r} is not allowed")
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ExpressionError(expression, f"Attribute {node.attr!r} is not allowed")
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in functions:
                    raise ExpressionError(expression, "Only built-in functions may be called")
                if node.keywords:
                    raise ExpressionError(expression, "Keyword arguments are not supported")
            if isinstance(node, ast.Subscript) and isinstance(node.slice, ast.Slice):
                raise ExpressionError(expression, "Slices are not supported")
        return tree

    def evaluate(
        self,
        expression: str,
        bindings: Mapping[str, Any],
        functions: Mapping[str, Callable] | None = None,
    ) -> Any:
        """
        Evaluate an expression against a fixed binding set.

        Args:
            expression: Python-syntax expression
            bindings: Names the expression may read (mappings become RecordViews)
            functions: Callables the expression may invoke by name

        Returns:
            The expression's value

        Raises:
            ExpressionError: On any parse, whitelist, type or budget failure
        """
        functions = functions or {}
        tree = self.compile(expression, functions)
        evaluation = _Evaluation(
            expression=expression,
            bindings={name: wrap_value(value) for name, value in bindings.items()},
            functions=functions,
            max_steps=self.max_steps,
            deadline=time.monotonic() + self.timeout_ms / 1000.0,
        )
        try:
            return evaluation.visit(tree)
        except ExpressionError:
            raise
        except RecursionError:
            raise ExpressionBudgetExceeded(expression, "Expression nesting too deep")
        except (TypeError, ValueError, ArithmeticError, KeyError, IndexError) as e:
            raise ExpressionError(expression, f"{type(e).__name__}: {e}")


class _Evaluation:
    """State of one evaluation: bindings, step counter and deadline."""

    def __init__(
        self,
        expression: str,
        bindings: dict[str, Any],
        functions: Mapping[str, Callable],
        max_steps: int,
        deadline: float,
    ):
        self.expression = expression
        self.bindings = bindings
        self.lower_bindings = {name.lower(): value for name, value in bindings.items()}
        self.functions = functions
        self.max_steps = max_steps
        self.deadline = deadline
        self.steps = 0

    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ExpressionBudgetExceeded(self.expression, "Expression exceeded step budget")
        if time.monotonic() > self.deadline:
            raise ExpressionBudgetExceeded(self.expression, "Expression exceeded time budget")

    def visit(self, node: ast.AST) -> Any:
        self._tick()

        if isinstance(node, ast.Expression):
            return self.visit(node.body)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in self.bindings:
                return self.bindings[node.id]
            lowered = node.id.lower()
            if lowered in self.lower_bindings:
                return self.lower_bindings[lowered]
            raise ExpressionError(self.expression, f"Unknown name {node.id!r}")

        if isinstance(node, ast.BoolOp):
            # Short-circuit and return the deciding operand, like `and`/`or`.
            result: Any = None
            for value_node in node.values:
                result = self.visit(value_node)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand

        if isinstance(node, ast.BinOp):
            return self._binop(node.op, self.visit(node.left), self.visit(node.right))

        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for operator, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if not _compare(operator, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self.visit(node.test):
                return self.visit(node.body)
            return self.visit(node.orelse)

        if isinstance(node, ast.List | ast.Tuple):
            return [self.visit(element) for element in node.elts]

        if isinstance(node, ast.Attribute):
            target = self.visit(node.value)
            if isinstance(target, RecordView):
                return target[node.attr]
            if node.attr == "length" and isinstance(target, str | list | tuple):
                return len(target)
            raise ExpressionError(self.expression, f"Attribute {node.attr!r} is not readable")

        if isinstance(node, ast.Subscript):
            target = self.visit(node.value)
            key = self.visit(node.slice)
            if isinstance(target, RecordView):
                return target[str(key)]
            if isinstance(target, str | list | tuple) and isinstance(key, int) and not isinstance(key, bool):
                return target[key]
            raise ExpressionError(self.expression, "Subscript target is not readable")

        if isinstance(node, ast.Call):
            function = self.functions[node.func.id]
            args = [self.visit(arg) for arg in node.args]
            return function(*args)

        raise ExpressionError(self.expression, f"Unsupported construct {type(node).__name__}")

    def _binop(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.BitAnd):
            text = _concat_text(left) + _concat_text(right)
            self._check_size(text)
            return text
        if isinstance(op, ast.Add):
            if isinstance(left, str) or isinstance(right, str):
                text = _concat_text(left) + _concat_text(right)
                self._check_size(text)
                return text
            result = left + right
            if isinstance(result, list):
                self._check_size(result)
            return result
        if isinstance(op, ast.Sub):
            return left - right
        if isinstance(op, ast.Mult):
            if isinstance(left, str | list) or isinstance(right, str | list):
                sequence, count = (left, right) if isinstance(left, str | list) else (right, left)
                if isinstance(count, int) and len(sequence) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                    raise ExpressionBudgetExceeded(self.expression, "Repetition too large")
            self._check_int_product(left, right)
            return left * right
        if isinstance(op, ast.Div):
            return left / right
        if isinstance(op, ast.FloorDiv):
            return left // right
        if isinstance(op, ast.Mod):
            return left % right
        if isinstance(op, ast.Pow):
            if not isinstance(right, int | float) or abs(right) > MAX_EXPONENT:
                raise ExpressionBudgetExceeded(self.expression, "Exponent too large")
            self._check_power(left, right)
            result = left ** right
            if isinstance(result, complex) or (isinstance(result, float) and not math.isfinite(result)):
                raise ExpressionError(self.expression, "Exponentiation produced a non-finite result")
            return result
        raise ExpressionError(self.expression, f"Unsupported operator {type(op).__name__}")

    def _check_power(self, left: Any, right: int | float) -> None:
        # Bound the result size before computing it; a nested power is one
        # big-int operation that no step or deadline check can interrupt.
        if isinstance(left, int | float) and not isinstance(left, bool) and abs(left) > 1 and right > 0:
            if right * math.log2(abs(left)) > MAX_RESULT_BITS:
                raise ExpressionBudgetExceeded(self.expression, "Power result too large")

    def _check_int_product(self, left: Any, right: Any) -> None:
        if isinstance(left, int) and isinstance(right, int):
            if left.bit_length() + right.bit_length() > MAX_RESULT_BITS:
                raise ExpressionBudgetExceeded(self.expression, "Product too large")

    def _check_size(self, value: str | list) -> None:
        if len(value) > MAX_SEQUENCE_LENGTH:
            raise ExpressionBudgetExceeded(self.expression, "Result too large")


def _concat_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _compare(operator: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(operator, ast.Eq):
        return left == right
    if isinstance(operator, ast.NotEq):
        return left != right
    if isinstance(operator, ast.In):
        return left in right
    if isinstance(operator, ast.NotIn):
        return left not in right
    if left is None or right is None:
        return False
    if isinstance(operator, ast.Lt):
        return left < right
    if isinstance(operator, ast.LtE):
        return left <= right
    if isinstance(operator, ast.Gt):
        return left > right
    return left >= right
