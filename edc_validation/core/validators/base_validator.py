"""
Base validator interface for all rule types.

All validators inherit from BaseValidator and implement validate(). A
validator signals a failed check by raising ValidationError, and signals a
rule it cannot evaluate (bad regex, broken expression) by raising
RuleContentError, which the evaluator turns into a fail-open pass.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from ..expressions import ExpressionSandbox
from ..models import FieldValue, Rule


class ValidationError(Exception):
    """Raised when a value fails a rule."""

    def __init__(self, rule_name: str, field_name: str, message: str):
        self.rule_name = rule_name
        self.field_name = field_name
        self.message = message
        super().__init__(f"[{rule_name}] {field_name}: {message}")


class RuleContentError(Exception):
    """
    Raised when a rule's own content cannot be evaluated.

    Attributes:
        rule_name: Rule whose content is broken
        reason: Short machine-readable reason (bad_regex, expression_error, budget_exceeded)
        message: Human-readable description
    """

    def __init__(self, rule_name: str, reason: str, message: str):
        self.rule_name = rule_name
        self.reason = reason
        self.message = message
        super().__init__(f"[{rule_name}] {reason}: {message}")


class BaseValidator(ABC):
    """
    Abstract base class for all validators.

    Each validator implements one rule type (required, range, format,
    consistency, business_logic/cross_form) for one rule.
    """

    def __init__(self, rule: Rule, sandbox: ExpressionSandbox | None = None):
        """
        Initialize validator.

        Args:
            rule: The rule being applied
            sandbox: Expression sandbox for formulas and custom expressions
        """
        self.rule = rule
        self.sandbox = sandbox or ExpressionSandbox()

    @property
    def field_name(self) -> str:
        return self.rule.field_path

    @abstractmethod
    def validate(self, value: FieldValue, record: Mapping[str, Any]) -> None:
        """
        Validate a value against this rule.

        Args:
            value: The submitted value (never empty; the evaluator handles that)
            record: The whole submitted form (for cross-field rules)

        Raises:
            ValidationError: If validation fails
            RuleContentError: If the rule itself cannot be evaluated
        """
        pass

    @property
    @abstractmethod
    def rule_type(self) -> str:
        """Return the rule type identifier."""
        pass

    def fail(self, message: str) -> ValidationError:
        return ValidationError(rule_name=self.rule.name, field_name=self.field_name, message=message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rule={self.rule.name!r}, field={self.field_name})"
