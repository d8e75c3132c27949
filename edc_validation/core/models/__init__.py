"""
Core data models for the validation engine.
"""

from .audit_log import AuditLog
from .field_value import FieldValue, ValueKind, parse_date_text
from .query import (
    CLOSED_STATUSES,
    AnchorType,
    CheckCategory,
    DiscrepancyQuery,
    QueryRequest,
    QueryStatus,
)
from .validation_result import FieldIssue, RuleOutcome, SubmissionState, ValidationReport
from .validation_rule import (
    COMPARISON_OPERATORS,
    KNOWN_RULE_TYPES,
    Rule,
    RuleCreate,
    RuleType,
    RuleUpdate,
)

__all__ = [
    "AnchorType",
    "AuditLog",
    "CLOSED_STATUSES",
    "COMPARISON_OPERATORS",
    "CheckCategory",
    "DiscrepancyQuery",
    "FieldIssue",
    "FieldValue",
    "KNOWN_RULE_TYPES",
    "QueryRequest",
    "QueryStatus",
    "Rule",
    "RuleCreate",
    "RuleOutcome",
    "RuleType",
    "RuleUpdate",
    "SubmissionState",
    "ValidationReport",
    "ValueKind",
    "parse_date_text",
]
