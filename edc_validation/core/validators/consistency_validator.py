"""
ConsistencyValidator - compares a value against another field of the same form.
"""

import operator as op
from collections.abc import Callable, Mapping
from typing import Any

from ..models import COMPARISON_OPERATORS, FieldValue, ValueKind
from ..rules.field_resolver import resolve_compare_value
from .base_validator import BaseValidator

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
}


def compare_values(left: FieldValue, right: FieldValue, operator: str) -> bool:
    """
    Compare two submitted values with a consistency operator.

    Both sides are compared as dates when either parses as one (a side that
    does not parse makes every comparison except inequality false), then as
    numbers when both coerce, then as text. ``===`` and ``!==`` additionally
    require both values to be of the same kind unless compared as dates.
    Unknown operators compare true.
    """
    if operator not in COMPARISON_OPERATORS:
        return True

    left_date = left.as_date()
    right_date = right.as_date()
    if left_date is not None or right_date is not None:
        if left_date is None or right_date is None:
            return operator in ("!=", "!==")
        return _apply(operator, left_date, right_date)

    if operator in ("===", "!=="):
        same = left.kind is right.kind and _loose_equal(left, right)
        return same if operator == "===" else not same

    left_number = left.as_number()
    right_number = right.as_number()
    if left_number is not None and right_number is not None:
        return _apply(operator, left_number, right_number)
    return _apply(operator, left.as_text(), right.as_text())


def _loose_equal(left: FieldValue, right: FieldValue) -> bool:
    if left.kind is ValueKind.NUMBER:
        return left.as_number() == right.as_number()
    return left.raw == right.raw


def _apply(operator: str, left: Any, right: Any) -> bool:
    if operator in ("==", "==="):
        return left == right
    if operator in ("!=", "!=="):
        return left != right
    return _ORDERING[operator](left, right)


class ConsistencyValidator(BaseValidator):
    """
    Validates a value against a second field using the rule's operator.

    Parameters (from the rule):
    - operator: one of == === != !== > < >= <=
    - compare_field_path: field resolved with the same strategies as the target

    An absent comparison field, or a rule without one, passes.
    """

    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        if not self.rule.compare_field_path:
            return
        other = resolve_compare_value(self.rule.compare_field_path, record)
        if other is None:
            return

        operator = self.rule.operator or "=="
        if not compare_values(value, other, operator):
            raise self.fail(
                f"{value.as_text()!r} {operator} {other.as_text()!r} "
                f"({self.rule.compare_field_path}) does not hold"
            )

    @property
    def rule_type(self) -> str:
        return "consistency"
