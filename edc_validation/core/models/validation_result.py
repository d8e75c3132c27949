"""
Validation outcome models.

RuleOutcome is the evaluator's verdict for one rule; ValidationReport is the
aggregated, caller-facing result of a form or field validation pass. Both are
ephemeral and never persisted.
"""

from enum import Enum
from typing import Any, List

from pydantic import BaseModel, Field, field_validator


class RuleOutcome(BaseModel):
    """
    Verdict of one rule against one value.

    Attributes:
        valid: Whether the value is acceptable
        skipped: True when the rule did not apply (multi-value, unknown type)
        detail: Why the rule passed or failed (for logs and the test-rule CLI)
    """

    valid: bool
    skipped: bool = False
    detail: str | None = None


class SubmissionState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    BLOCKED = "blocked"
    ACCEPTED = "accepted"


class FieldIssue(BaseModel):
    """One failed rule reported to the caller."""

    field_path: str
    message: str
    severity: str
    rule_name: str | None = None
    query_id: int | None = None
    data_point_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "fieldPath": self.field_path,
            "message": self.message,
            "severity": self.severity,
        }
        if self.query_id is not None:
            payload["queryId"] = self.query_id
        if self.data_point_id is not None:
            payload["dataPointId"] = self.data_point_id
        return payload


class ValidationReport(BaseModel):
    """
    Outcome of validating a form submission or a single field.

    Attributes:
        valid: False iff at least one error-severity rule failed
        errors: Error-severity failures, in rule-list order
        warnings: Warning-severity failures, in rule-list order
        queries_created: Number of queries created or reused for this pass
        state: Blocked when errors are present, otherwise accepted
    """

    valid: bool
    errors: List[FieldIssue] = Field(default_factory=list)
    warnings: List[FieldIssue] = Field(default_factory=list)
    queries_created: int = 0
    state: SubmissionState = SubmissionState.ACCEPTED

    @field_validator("errors")
    @classmethod
    def check_valid_consistency(cls, v, info):
        """Validate that valid=True implies errors is empty."""
        if info.data.get("valid") and len(v) > 0:
            raise ValueError("valid=True but errors is not empty")
        return v

    def to_payload(self) -> dict[str, Any]:
        """Structured result in the shape the controller layer serialises."""
        return {
            "valid": self.valid,
            "errors": [issue.to_payload() for issue in self.errors],
            "warnings": [
                {"fieldPath": issue.field_path, "message": issue.message}
                for issue in self.warnings
            ],
            "queriesCreated": self.queries_created,
        }

    class Config:
        json_schema_extra = {
            "example": {
                "valid": False,
                "errors": [
                    {
                        "field_path": "demographics.age",
                        "message": "Age must be between 18 and 100",
                        "severity": "error",
                        "query_id": 55,
                        "data_point_id": 1201,
                    }
                ],
                "warnings": [],
                "queries_created": 1,
                "state": "blocked",
            }
        }
