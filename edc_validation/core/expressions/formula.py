"""
Spreadsheet-style formulas for format and business-logic rules.

Study builders write checks the way they would in a spreadsheet::

    =AND({age}>=18, {age}<=120)
    =IF({pregnant}="yes", {age}>=18, TRUE)
    =EXACT(LEFT({value},3),"ABC")

A formula is rewritten into Python expression syntax and run by the
:class:`ExpressionSandbox` with a fixed table of spreadsheet functions.
``{field}`` references read submitted form data; ``{value}`` is the value
being validated.
"""

import math
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from ..models.field_value import parse_date_text
from .sandbox import ExpressionError, ExpressionSandbox, RecordView

FORMULA_MARKER = "=FORMULA:"

_TOKEN_RE = re.compile(
    r"""
    (?P<string>"(?:[^"]|"")*")
    |(?P<ref>\{[^{}]+\})
    |(?P<op><>|!=|<=|>=|==?|\^)
    |(?P<word>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)
_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")


def is_formula(text: str | None) -> bool:
    """True for patterns that encode a formula rather than a regex."""
    return bool(text) and text.startswith("=")


def strip_marker(formula: str) -> str:
    if formula.startswith(FORMULA_MARKER):
        return formula[len(FORMULA_MARKER):]
    if formula.startswith("="):
        return formula[1:]
    return formula


def _reference_name(field_name: str) -> str:
    return "fld_" + re.sub(r"[^A-Za-z0-9]", "_", field_name)


def translate_formula(formula: str) -> tuple[str, dict[str, str]]:
    """
    Rewrite a formula into sandbox expression syntax.

    Args:
        formula: Formula text, with or without the leading marker

    Returns:
        (expression, references) where references maps each generated
        variable name back to the field name it was written as
    """
    references: dict[str, str] = {}
    body = strip_marker(formula.strip())

    def replace(match: re.Match) -> str:
        if match.group("string"):
            return repr(match.group("string")[1:-1].replace('""', '"'))
        if match.group("ref"):
            field_name = match.group("ref")[1:-1].strip()
            variable = _reference_name(field_name)
            references[variable] = field_name
            return variable
        op = match.group("op")
        if op:
            return {"<>": "!=", "!=": "!=", "<=": "<=", ">=": ">=", "^": "**"}.get(op, "==")
        word = match.group("word")
        upper = word.upper()
        if upper in ("TRUE", "FALSE"):
            return "True" if upper == "TRUE" else "False"
        following = body[match.end():].lstrip()
        if upper in FORMULA_FUNCTIONS and following.startswith("("):
            return upper
        return word.lower()

    return _TOKEN_RE.sub(replace, body), references


def _lookup(data: Mapping[str, Any], field_name: str) -> Any:
    if field_name in data:
        return data[field_name]
    lowered = field_name.lower()
    for key, value in data.items():
        if key.lower() == lowered:
            return value
    current: Any = data
    for segment in field_name.split("."):
        if not isinstance(current, Mapping):
            return None
        match = None
        for key, value in current.items():
            if key == segment or key.lower() == segment.lower():
                match = value
                break
        current = match
    return current


def formula_operand(value: Any) -> Any:
    """
    Normalise a bound field value.

    Missing and empty values read as "", numeric strings read as numbers.
    """
    if value is None or value == "":
        return ""
    if isinstance(value, str) and _NUMERIC_RE.match(value.strip()):
        text = value.strip()
        return float(text) if "." in text else int(text)
    return value


def formula_truth(result: Any) -> bool:
    """
    Interpret a formula result as pass/fail.

    Booleans are taken as-is, numbers pass unless zero, "true"/"yes" and
    "false"/"no" strings are read as booleans and any other non-null result
    passes.
    """
    if isinstance(result, bool):
        return result
    if isinstance(result, int | float):
        return result != 0
    if isinstance(result, str):
        lowered = result.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
    return result is not None


def evaluate_formula(
    sandbox: ExpressionSandbox,
    formula: str,
    value: Any,
    form_data: Mapping[str, Any],
) -> bool:
    """
    Evaluate a formula against a value and its surrounding form data.

    Raises:
        ExpressionError: If the formula cannot be translated or evaluated
    """
    expression, references = translate_formula(formula)
    if not expression.strip():
        raise ExpressionError(formula, "Empty formula")

    bindings: dict[str, Any] = {}
    for key, field_value in form_data.items():
        bindings[str(key).lower()] = formula_operand(field_value)
    for variable, field_name in references.items():
        if field_name.lower() == "value":
            bindings[variable] = formula_operand(value)
        else:
            bindings[variable] = formula_operand(_lookup(form_data, field_name))
    bindings["value"] = formula_operand(value)

    return formula_truth(sandbox.evaluate(expression, bindings, FORMULA_FUNCTIONS))


# =======================
# FUNCTION TABLE
# =======================

def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, RecordView):
        raise ExpressionError(str(value), "Expected a scalar value")
    return str(value)


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, int | float):
        return float(value)
    if value == "" or value is None:
        return 0.0
    try:
        return float(str(value).strip())
    except ValueError:
        raise ValueError(f"#VALUE! {value!r} is not a number")


def _numbers(args: tuple) -> list[float]:
    flat: list[Any] = []
    for arg in args:
        if isinstance(arg, list | tuple):
            flat.extend(arg)
        else:
            flat.append(arg)
    return [_number(item) for item in flat if item != ""]


def _date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date_text(_text(value))
    if parsed is None:
        raise ValueError(f"#VALUE! {value!r} is not a date")
    return parsed.date()


def _if(condition: Any, when_true: Any = True, when_false: Any = False) -> Any:
    return when_true if condition else when_false


def _round(value: Any, digits: Any = 0) -> float:
    digits = int(_number(digits))
    factor = 10 ** digits
    number = _number(value) * factor
    # Spreadsheets round half away from zero.
    rounded = math.floor(abs(number) + 0.5) * (1 if number >= 0 else -1)
    return rounded / factor


def _mid(text: Any, start: Any, length: Any) -> str:
    begin = int(_number(start)) - 1
    if begin < 0:
        raise ValueError("#VALUE! MID start must be at least 1")
    return _text(text)[begin:begin + int(_number(length))]


def _average(*args: Any) -> float:
    numbers = _numbers(args)
    if not numbers:
        raise ZeroDivisionError("#DIV/0! AVERAGE of no numbers")
    return sum(numbers) / len(numbers)


def _count(*args: Any) -> int:
    flat: list[Any] = []
    for arg in args:
        flat.extend(arg if isinstance(arg, list | tuple) else [arg])
    return sum(1 for item in flat if isinstance(item, int | float) and not isinstance(item, bool))


FORMULA_FUNCTIONS = {
    "AND": lambda *args: all(bool(arg) for arg in args),
    "OR": lambda *args: any(bool(arg) for arg in args),
    "NOT": lambda value: not value,
    "IF": _if,
    "LEN": lambda value: len(_text(value)),
    "ISNUMBER": lambda value: isinstance(value, int | float) and not isinstance(value, bool),
    "ISTEXT": lambda value: isinstance(value, str) and value != "",
    "ISBLANK": lambda value: value is None or value == "",
    "VALUE": _number,
    "ABS": lambda value: abs(_number(value)),
    "ROUND": _round,
    "MIN": lambda *args: min(_numbers(args), default=0.0),
    "MAX": lambda *args: max(_numbers(args), default=0.0),
    "SUM": lambda *args: sum(_numbers(args)),
    "AVERAGE": _average,
    "COUNT": _count,
    "LEFT": lambda text, count=1: _text(text)[: max(int(_number(count)), 0)],
    "RIGHT": lambda text, count=1: _text(text)[-int(_number(count)):] if int(_number(count)) > 0 else "",
    "MID": _mid,
    "UPPER": lambda text: _text(text).upper(),
    "LOWER": lambda text: _text(text).lower(),
    "TRIM": lambda text: " ".join(_text(text).split()),
    "EXACT": lambda left, right: _text(left) == _text(right),
    "CONCATENATE": lambda *args: "".join(_text(arg) for arg in args),
    "MOD": lambda number, divisor: _number(number) % _number(divisor),
    "SQRT": lambda value: math.sqrt(_number(value)),
    "TODAY": lambda: date.today(),
    "YEAR": lambda value: _date(value).year,
    "MONTH": lambda value: _date(value).month,
    "DAY": lambda value: _date(value).day,
}
