"""
FormatValidator - validates values against a named format, a regex or a formula.
"""

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import regex

from ..expressions import ExpressionBudgetExceeded, ExpressionError, evaluate_formula, is_formula
from ..models import FieldValue
from .base_validator import BaseValidator, RuleContentError

MAX_MATCH_LENGTH = 10_000

# Builders pick a format by key; the pattern is resolved at evaluation time so
# changing an archetype here applies to every rule that names it.
FORMAT_TYPE_REGISTRY: dict[str, dict[str, str]] = {
    "email": {
        "label": "Email address",
        "pattern": r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$",
        "example": "jane.doe@example.org",
    },
    "numbers_only": {
        "label": "Numbers only",
        "pattern": r"^\d+$",
        "example": "12345",
    },
    "letters_only": {
        "label": "Letters only",
        "pattern": r"^[A-Za-z\s]+$",
        "example": "Jane Doe",
    },
    "date_mmddyyyy": {
        "label": "Date (MM/DD/YYYY)",
        "pattern": r"^(0[1-9]|1[0-2])/(0[1-9]|[12]\d|3[01])/\d{4}$",
        "example": "03/15/2024",
    },
    "time_24h": {
        "label": "Time (24-hour HH:MM)",
        "pattern": r"^([01]\d|2[0-3]):[0-5]\d$",
        "example": "14:30",
    },
    "phone_us": {
        "label": "US phone number",
        "pattern": r"^(\(\d{3}\)\s?|\d{3}[-.\s]?)\d{3}[-.\s]?\d{4}$",
        "example": "(555) 123-4567",
    },
    "zipcode_us": {
        "label": "US ZIP code",
        "pattern": r"^\d{5}(-\d{4})?$",
        "example": "02139",
    },
    "initials": {
        "label": "Subject initials",
        "pattern": r"^[A-Z]{2,3}$",
        "example": "JMD",
    },
    "subject_id": {
        "label": "Subject ID (SITE-0001)",
        "pattern": r"^[A-Z]{2,4}-\d{3,5}$",
        "example": "BOS-0042",
    },
    "decimal_2dp": {
        "label": "Decimal, two places",
        "pattern": r"^-?\d+\.\d{2}$",
        "example": "72.50",
    },
    "positive_number": {
        "label": "Non-negative number",
        "pattern": r"^\d+(\.\d+)?$",
        "example": "98.6",
    },
    "custom_regex": {
        "label": "Custom pattern",
        "pattern": "",
        "example": "",
    },
}


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> regex.Pattern:
    """Compile and cache a rule pattern. Raises regex.error for bad patterns."""
    return regex.compile(pattern)


def resolve_pattern(format_type: str | None, pattern: str | None) -> str | None:
    """
    Pattern a format rule applies.

    A registered archetype other than ``custom_regex`` wins over the rule's
    stored pattern; otherwise the stored pattern is used as-is.
    """
    if format_type and format_type != "custom_regex" and format_type in FORMAT_TYPE_REGISTRY:
        return FORMAT_TYPE_REGISTRY[format_type]["pattern"]
    return pattern


class FormatValidator(BaseValidator):
    """
    Validates that a value matches the rule's format.

    The resolved pattern is either a regular expression (searched in the
    value's text) or an encoded spreadsheet formula starting with "=".
    Unparseable regexes, matches that run past the sandbox's match timeout
    and formula errors fail open.
    """

    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        """
        Raises:
            ValidationError: If the value does not match
            RuleContentError: If the pattern or formula cannot be evaluated
        """
        pattern = resolve_pattern(self.rule.format_type, self.rule.pattern)
        if not pattern:
            return

        if is_formula(pattern):
            self._validate_formula(pattern, value, record)
            return

        try:
            compiled = compile_pattern(pattern)
        except regex.error as e:
            raise RuleContentError(self.rule.name, "bad_regex", f"Invalid regex pattern: {e}")

        text = value.as_text()
        if len(text) > MAX_MATCH_LENGTH:
            raise self.fail("Value is too long to check against the format")
        try:
            matched = compiled.search(text, timeout=self.sandbox.match_timeout_ms / 1000)
        except TimeoutError:
            raise RuleContentError(self.rule.name, "budget_exceeded", "Regex match timed out")
        if not matched:
            raise self.fail(f"Value {text!r} does not match the required format")

    def _validate_formula(self, formula: str, value: FieldValue, record: Mapping[str, Any]) -> None:
        try:
            passed = evaluate_formula(self.sandbox, formula, value.to_python(), record)
        except ExpressionBudgetExceeded as e:
            raise RuleContentError(self.rule.name, "budget_exceeded", e.message)
        except ExpressionError as e:
            raise RuleContentError(self.rule.name, "expression_error", e.message)
        if not passed:
            raise self.fail("Value does not satisfy the format formula")

    @property
    def rule_type(self) -> str:
        return "format"
