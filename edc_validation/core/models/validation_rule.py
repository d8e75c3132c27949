"""
Rule model representing a configurable check applied to submitted form values.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .field_value import parse_date_text

Severity = Literal["error", "warning"]
ValueKind = Literal["numeric", "date"]
RuleSource = Literal["explicit", "metadata", "legacy"]


class RuleType(str, Enum):
    """Rule types the evaluator knows how to judge."""

    REQUIRED = "required"
    RANGE = "range"
    FORMAT = "format"
    CONSISTENCY = "consistency"
    BUSINESS_LOGIC = "business_logic"
    CROSS_FORM = "cross_form"


KNOWN_RULE_TYPES = frozenset(member.value for member in RuleType)

COMPARISON_OPERATORS = ("==", "===", "!=", "!==", ">", "<", ">=", "<=")


def _coerce_bound(value: Any, value_kind: str) -> float | date | None:
    if value is None or value == "":
        return None
    if value_kind == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        parsed = parse_date_text(str(value))
        if parsed is None:
            raise ValueError(f"Date bound {value!r} is not a date")
        return parsed.date()
    if isinstance(value, bool):
        raise ValueError("Numeric bound cannot be a boolean")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Numeric bound {value!r} is not a number")


class Rule(BaseModel):
    """
    A check applied to one field of one form.

    Rules are authored in the rules table (source="explicit") or synthesised
    read-only from form item metadata and the legacy rules module.

    Attributes:
        rule_id: Primary key (None for synthesised rules)
        form_id: Form this rule belongs to
        form_version_id: Restricts the rule to one form version when set
        item_id: Stored item the rule targets, when known
        name: Human-readable rule name
        description: Free-text description
        rule_type: required, range, format, consistency, business_logic, cross_form
        field_path: Logical path of the target field ("demographics.age")
        severity: "error" blocks the submission, "warning" is advisory
        error_message: Message shown when the rule fails as an error
        warning_message: Message shown when the rule fails as a warning
        active: Inactive rules are kept for history but never evaluated
        value_kind: How range bounds and values are coerced ("numeric" or "date")
        min_value: Lower bound, inclusive (0 is a real bound)
        max_value: Upper bound, inclusive
        pattern: Regex, or an encoded formula starting with "=" / "=FORMULA:"
        format_type: Named format archetype ("email", "phone_us", ...)
        operator: Comparison operator for consistency rules
        compare_field_path: Field compared against for consistency rules
        custom_expression: Boolean expression for business_logic/cross_form rules
        owner_id: User that authored the rule
        updated_by: User that last changed the rule
        source: Where the rule came from
    """

    rule_id: int | None = None
    form_id: int
    form_version_id: int | None = None
    item_id: int | None = None
    name: str = Field(..., min_length=1)
    description: str | None = None
    rule_type: str = Field(..., min_length=1)
    field_path: str = Field(..., min_length=1)
    severity: Severity = "error"
    error_message: str = Field(..., min_length=1)
    warning_message: str | None = None
    active: bool = True
    value_kind: ValueKind = "numeric"
    min_value: float | date | None = None
    max_value: float | date | None = None
    pattern: str | None = None
    format_type: str | None = None
    operator: str | None = None
    compare_field_path: str | None = None
    custom_expression: str | None = None
    owner_id: int | None = None
    updated_by: int | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime | None = None
    source: RuleSource = "explicit"

    @field_validator("rule_type", mode="before")
    @classmethod
    def normalise_rule_type(cls, v):
        """Store enum members by value; unknown types are kept verbatim."""
        if isinstance(v, RuleType):
            return v.value
        return v

    @model_validator(mode="before")
    @classmethod
    def coerce_bounds(cls, data: Any) -> Any:
        """Coerce min/max to the type named by value_kind."""
        if not isinstance(data, dict):
            return data
        value_kind = data.get("value_kind") or "numeric"
        coerced = dict(data)
        for key in ("min_value", "max_value"):
            if key in coerced:
                coerced[key] = _coerce_bound(coerced[key], value_kind)
        return coerced

    @property
    def read_only(self) -> bool:
        return self.source != "explicit"

    def message_for_severity(self) -> str:
        """Message for this rule's severity, falling back to the error message."""
        if self.severity == "warning" and self.warning_message:
            return self.warning_message
        return self.error_message

    class Config:
        json_schema_extra = {
            "example": {
                "rule_id": 1,
                "form_id": 12,
                "name": "Age in range",
                "rule_type": "range",
                "field_path": "demographics.age",
                "severity": "error",
                "error_message": "Age must be between 18 and 100",
                "active": True,
                "value_kind": "numeric",
                "min_value": 18,
                "max_value": 100,
            }
        }


class RuleCreate(BaseModel):
    """Payload for creating an explicit rule."""

    form_id: int
    form_version_id: int | None = None
    item_id: int | None = None
    name: str = Field(..., min_length=1)
    description: str | None = None
    rule_type: str = Field(..., min_length=1)
    field_path: str = Field(..., min_length=1)
    severity: Severity = "error"
    error_message: str = Field(..., min_length=1)
    warning_message: str | None = None
    active: bool = True
    value_kind: ValueKind = "numeric"
    min_value: float | date | None = None
    max_value: float | date | None = None
    pattern: str | None = None
    format_type: str | None = None
    operator: str | None = None
    compare_field_path: str | None = None
    custom_expression: str | None = None

    @model_validator(mode="before")
    @classmethod
    def coerce_bounds(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        value_kind = data.get("value_kind") or "numeric"
        coerced = dict(data)
        for key in ("min_value", "max_value"):
            if key in coerced:
                coerced[key] = _coerce_bound(coerced[key], value_kind)
        return coerced


class RuleUpdate(BaseModel):
    """
    Partial update of an explicit rule.

    Only fields present in the payload change (``model_fields_set``); an
    explicit ``None`` clears a nullable column.
    """

    name: str | None = Field(None, min_length=1)
    description: str | None = None
    rule_type: str | None = Field(None, min_length=1)
    field_path: str | None = Field(None, min_length=1)
    severity: Severity | None = None
    error_message: str | None = Field(None, min_length=1)
    warning_message: str | None = None
    active: bool | None = None
    value_kind: ValueKind | None = None
    min_value: float | str | date | None = None
    max_value: float | str | date | None = None
    pattern: str | None = None
    format_type: str | None = None
    operator: str | None = None
    compare_field_path: str | None = None
    custom_expression: str | None = None
    item_id: int | None = None
    form_version_id: int | None = None

    NOT_NULLABLE: ClassVar[frozenset[str]] = frozenset(
        {"name", "rule_type", "field_path", "severity", "error_message", "active", "value_kind"}
    )

    def changes(self) -> dict[str, Any]:
        """
        Fields supplied by the caller.

        Raises:
            ValueError: If a non-nullable field is explicitly cleared
        """
        supplied = {name: getattr(self, name) for name in self.model_fields_set}
        for name, value in supplied.items():
            if value is None and name in self.NOT_NULLABLE:
                raise ValueError(f"Field '{name}' cannot be cleared")
        return supplied
