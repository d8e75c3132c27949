"""
RangeValidator - validates numeric or date values are within bounds.
"""

from collections.abc import Mapping
from datetime import date
from typing import Any

from ..models import FieldValue
from .base_validator import BaseValidator


class RangeValidator(BaseValidator):
    """
    Validates that a value is within the rule's inclusive bounds.

    The rule's ``value_kind`` decides coercion: "numeric" values must parse
    as a finite number, "date" values as a date. A value that does not
    coerce fails. Either bound may be absent; a bound of 0 is honoured.
    """

    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        """
        Validate that the value is within the specified range.

        Raises:
            ValidationError: If value does not coerce or is outside the range
        """
        if self.rule.value_kind == "date":
            self._validate_date(value)
        else:
            self._validate_number(value)

    def _validate_number(self, value: FieldValue) -> None:
        number = value.as_number()
        if number is None:
            raise self.fail(f"Value {value.as_text()!r} is not a number")

        minimum = self.rule.min_value
        maximum = self.rule.max_value
        if minimum is not None and number < float(minimum):
            raise self.fail(f"Value {number} is less than minimum {minimum}")
        if maximum is not None and number > float(maximum):
            raise self.fail(f"Value {number} exceeds maximum {maximum}")

    def _validate_date(self, value: FieldValue) -> None:
        parsed = value.as_date()
        if parsed is None:
            raise self.fail(f"Value {value.as_text()!r} is not a date")

        day = parsed.date()
        minimum = self.rule.min_value
        maximum = self.rule.max_value
        if isinstance(minimum, date) and day < minimum:
            raise self.fail(f"Date {day.isoformat()} is before {minimum.isoformat()}")
        if isinstance(maximum, date) and day > maximum:
            raise self.fail(f"Date {day.isoformat()} is after {maximum.isoformat()}")

    @property
    def rule_type(self) -> str:
        return "range"
