"""
ExpressionValidator - validates using a custom boolean expression.
"""

from collections.abc import Mapping
from typing import Any

from ..expressions import (
    ExpressionBudgetExceeded,
    ExpressionError,
    evaluate_formula,
    is_formula,
    translate_js,
)
from ..models import FieldValue
from .base_validator import BaseValidator, RuleContentError


class ExpressionValidator(BaseValidator):
    """
    Validates using the rule's ``custom_expression``.

    Expressions starting with "=" are spreadsheet formulas. Anything else is a
    boolean expression that may use ``&& || ! === !== null true false`` and
    reads two names: ``value`` (the submitted value) and ``data`` (the whole
    form, e.g. ``data.visit_date`` or ``data["vitals"]["weight"]``).

    Example:
        value >= 18 || data.guardian_consent === true
    """

    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        expression = (self.rule.custom_expression or "").strip()
        if not expression:
            return

        try:
            if is_formula(expression):
                passed = evaluate_formula(self.sandbox, expression, value.to_python(), record)
            else:
                result = self.sandbox.evaluate(
                    translate_js(expression),
                    {"value": value.to_python(), "data": record},
                )
                passed = bool(result)
        except ExpressionBudgetExceeded as e:
            raise RuleContentError(self.rule.name, "budget_exceeded", e.message)
        except ExpressionError as e:
            raise RuleContentError(self.rule.name, "expression_error", e.message)

        if not passed:
            raise self.fail("Custom expression evaluated to false")

    @property
    def rule_type(self) -> str:
        return self.rule.rule_type
