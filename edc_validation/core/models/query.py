"""
Discrepancy query models.

A query is a tracked issue raised against a data point. This package only
creates queries (status "new"); the surrounding workflow system moves them
through the rest of their lifecycle and this package only observes whether a
query is still open.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class CheckCategory(str, Enum):
    """Check type a query was raised for. Deduplication is per category."""

    FAILED_VALIDATION = "failed_validation"
    ANNOTATION = "annotation"

    @classmethod
    def for_severity(cls, severity: str) -> "CheckCategory":
        return cls.ANNOTATION if severity == "warning" else cls.FAILED_VALIDATION


class QueryStatus(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    RESOLUTION_PROPOSED = "resolution_proposed"
    CLOSED = "closed"
    NOT_APPLICABLE = "not_applicable"


CLOSED_STATUSES = (QueryStatus.CLOSED.value, QueryStatus.NOT_APPLICABLE.value)


class AnchorType(str, Enum):
    """Granularities a query can be looked up from."""

    DATA_POINT = "data_point"
    FORM_INSTANCE = "form_instance"
    SUBJECT = "subject"


class QueryRequest(BaseModel):
    """
    Parameters of one create-or-reuse attempt.

    Attributes:
        study_id: Study the query belongs to
        subject_id: Subject the form instance belongs to
        form_instance_id: Form instance the failing value was entered in
        data_point_id: Stored data point, when already known
        item_id: Stored item the rule targets (used to find the data point)
        field_path: Field the rule failed on
        rule_name: Name of the failing rule
        rule_id: Id of the failing rule (None for synthesised rules)
        message: Message reported to the user
        severity: Severity of the failing rule
        value: The attempted value
        actor_id: User whose submission triggered the query
        assigned_user_id: Explicit assignee, bypasses assignee resolution
        form_id: Form the rule belongs to (workflow routing lookup)
    """

    study_id: int
    subject_id: int | None = None
    form_instance_id: int | None = None
    data_point_id: int | None = None
    item_id: int | None = None
    field_path: str
    rule_name: str
    rule_id: int | None = None
    message: str
    severity: str = "error"
    value: Any = None
    actor_id: int
    assigned_user_id: int | None = None
    form_id: int | None = None

    @property
    def category(self) -> CheckCategory:
        return CheckCategory.for_severity(self.severity)

    def description(self) -> str:
        label = "Warning" if self.severity == "warning" else "Error"
        return f"Validation {label}: {self.rule_name}"

    class Config:
        json_schema_extra = {
            "example": {
                "study_id": 3,
                "subject_id": 44,
                "form_instance_id": 901,
                "field_path": "vitals.systolic_bp",
                "rule_name": "Systolic BP range",
                "message": "Systolic BP must be between 60 and 250",
                "severity": "error",
                "value": "300",
                "actor_id": 7,
            }
        }


class DiscrepancyQuery(BaseModel):
    """A stored discrepancy query row."""

    query_id: int
    study_id: int
    subject_id: int | None = None
    form_instance_id: int | None = None
    data_point_id: int | None = None
    check_category: CheckCategory
    status: QueryStatus = QueryStatus.NEW
    description: str
    detailed_notes: str | None = None
    field_path: str | None = None
    rule_name: str | None = None
    owner_id: int
    assigned_user_id: int | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_open(self) -> bool:
        return self.status.value not in CLOSED_STATUSES
