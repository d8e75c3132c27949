"""
RequiredFieldValidator - ensures a field has an answer.
"""

from collections.abc import Mapping
from typing import Any

from ..models import FieldValue, ValueKind
from .base_validator import BaseValidator


class RequiredFieldValidator(BaseValidator):
    """
    Validates that a required field is answered.

    Fails if:
    - Value is null
    - Value is the empty string
    - Value is an empty selection list

    ``0``, ``False``, ``"0"`` and whitespace-only strings are answers.
    """

    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        if value.kind is ValueKind.NULL:
            raise self.fail("Field value is null")
        if value.kind is ValueKind.STRING and value.raw == "":
            raise self.fail("Field value is empty string")
        if value.kind is ValueKind.LIST and not value.raw:
            raise self.fail("No option selected")

    @property
    def rule_type(self) -> str:
        return "required"
