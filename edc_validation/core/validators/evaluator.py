"""
Rule evaluator: decides pass, fail or skip for one rule against one value.

Evaluation is pure: no I/O and no exceptions escape. Rule content that
cannot be evaluated fails open so a malformed rule never blocks data entry.
"""

from collections.abc import Mapping
from typing import Any

from ...observability.logger import get_logger
from ...observability.metrics import record_fail_open, record_rule_outcome
from ..expressions import ExpressionSandbox
from ..models import KNOWN_RULE_TYPES, FieldValue, Rule, RuleOutcome, RuleType, ValueKind
from .base_validator import BaseValidator, RuleContentError, ValidationError
from .consistency_validator import ConsistencyValidator
from .expression_validator import ExpressionValidator
from .format_validator import FormatValidator
from .range_validator import RangeValidator
from .required_field_validator import RequiredFieldValidator

logger = get_logger(__name__)

SCALAR_ONLY_TYPES = (RuleType.RANGE.value, RuleType.FORMAT.value)


class RuleEvaluator:
    """
    Applies a rule to a value using the validator registered for its type.

    Pre-dispatch handling, shared by every rule type:
    - an empty value (null or "") fails required rules and passes the rest
    - a list fails a required rule only when it is empty
    - lists and comma-joined selections are skipped by range and format rules
    - unknown rule types pass
    """

    VALIDATOR_REGISTRY: dict[str, type[BaseValidator]] = {
        RuleType.REQUIRED.value: RequiredFieldValidator,
        RuleType.RANGE.value: RangeValidator,
        RuleType.FORMAT.value: FormatValidator,
        RuleType.CONSISTENCY.value: ConsistencyValidator,
        RuleType.BUSINESS_LOGIC.value: ExpressionValidator,
        RuleType.CROSS_FORM.value: ExpressionValidator,
    }

    def __init__(self, sandbox: ExpressionSandbox | None = None):
        """
        Initialize the evaluator.

        Args:
            sandbox: Sandbox shared by all formula and expression rules
        """
        self.sandbox = sandbox or ExpressionSandbox()

    def evaluate(
        self,
        rule: Rule,
        value: FieldValue | Any,
        form_data: Mapping[str, Any] | None = None,
    ) -> RuleOutcome:
        """
        Evaluate one rule against one value.

        Args:
            rule: Rule to apply
            value: Submitted value (raw values are wrapped in a FieldValue)
            form_data: Whole submitted form, for cross-field rules

        Returns:
            RuleOutcome, never raises
        """
        form_data = form_data or {}
        if not isinstance(value, FieldValue):
            value = FieldValue.from_raw(value)

        outcome = self._evaluate(rule, value, form_data)
        label = rule.rule_type if rule.rule_type in KNOWN_RULE_TYPES else "unknown"
        if outcome.skipped:
            record_rule_outcome(label, "skipped")
        else:
            record_rule_outcome(label, "passed" if outcome.valid else "failed")
        return outcome

    def _evaluate(self, rule: Rule, value: FieldValue, form_data: Mapping[str, Any]) -> RuleOutcome:
        is_required = rule.rule_type == RuleType.REQUIRED.value

        if value.is_empty:
            if is_required:
                return RuleOutcome(valid=False, detail="Value is empty")
            return RuleOutcome(valid=True, skipped=True, detail="Rule does not apply to an empty value")

        if value.kind is ValueKind.LIST:
            if is_required:
                return RuleOutcome(valid=bool(value.raw), detail=f"{len(value.raw)} option(s) selected")
            if rule.rule_type in SCALAR_ONLY_TYPES:
                return RuleOutcome(valid=True, skipped=True, detail="Multi-value selection")

        if value.is_multi_value and rule.rule_type in SCALAR_ONLY_TYPES:
            return RuleOutcome(valid=True, skipped=True, detail="Multi-value selection")

        validator_class = self.VALIDATOR_REGISTRY.get(rule.rule_type)
        if validator_class is None:
            return RuleOutcome(valid=True, skipped=True, detail=f"Unknown rule type {rule.rule_type!r}")

        validator = validator_class(rule, self.sandbox)
        try:
            validator.validate(value, form_data)
        except ValidationError as e:
            return RuleOutcome(valid=False, detail=e.message)
        except RuleContentError as e:
            logger.warning(
                "Rule content could not be evaluated, passing value",
                extra={
                    "rule_id": rule.rule_id,
                    "rule_name": rule.name,
                    "rule_type": rule.rule_type,
                    "reason": e.reason,
                    "error_message": e.message,
                },
            )
            record_fail_open(rule.rule_type, e.reason)
            return RuleOutcome(valid=True, skipped=True, detail=f"Fail-open: {e.message}")
        except Exception as e:
            logger.error(
                "Unexpected error evaluating rule, passing value",
                extra={"rule_id": rule.rule_id, "rule_name": rule.name, "error_type": type(e).__name__},
                exc_info=True,
            )
            record_fail_open(rule.rule_type, "internal_error")
            return RuleOutcome(valid=True, skipped=True, detail=f"Fail-open: {type(e).__name__}")

        return RuleOutcome(valid=True)

    def validator_for(self, rule: Rule) -> BaseValidator | None:
        """Validator instance for a rule, or None for unknown rule types."""
        validator_class = self.VALIDATOR_REGISTRY.get(rule.rule_type)
        return validator_class(rule, self.sandbox) if validator_class else None
