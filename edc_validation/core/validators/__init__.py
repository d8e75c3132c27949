"""
Rule type implementations.

Provides validators for required fields, ranges, formats (named archetypes,
regexes and formulas), cross-field consistency and custom expressions, plus
the RuleEvaluator that dispatches to them.
"""

from .base_validator import BaseValidator, RuleContentError, ValidationError
from .consistency_validator import ConsistencyValidator, compare_values
from .evaluator import RuleEvaluator
from .expression_validator import ExpressionValidator
from .format_validator import FORMAT_TYPE_REGISTRY, FormatValidator, resolve_pattern
from .range_validator import RangeValidator
from .required_field_validator import RequiredFieldValidator

__all__ = [
    "BaseValidator",
    "ConsistencyValidator",
    "ExpressionValidator",
    "FORMAT_TYPE_REGISTRY",
    "FormatValidator",
    "RangeValidator",
    "RequiredFieldValidator",
    "RuleContentError",
    "RuleEvaluator",
    "ValidationError",
    "compare_values",
    "resolve_pattern",
]
