"""
AuditLog model representing one audit-trail entry written by this package.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class AuditLog(BaseModel):
    """
    Audit-trail entry for a rule mutation or a created query.

    Attributes:
        log_id: Auto-increment primary key
        entity_type: What was changed ("validation_rule", "discrepancy_query")
        entity_id: Primary key of the changed entity
        action: What happened ("rule_created", "query_created", ...)
        actor_id: User that caused the change
        detail: Human-readable detail ("Rule: Age range, Field: age")
        created_at: When the change happened
    """

    log_id: int | None = None
    entity_type: str = Field(..., min_length=1)
    entity_id: int
    action: str = Field(..., min_length=1)
    actor_id: int | None = None
    detail: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "log_id": 1,
                "entity_type": "discrepancy_query",
                "entity_id": 55,
                "action": "query_created",
                "actor_id": 7,
                "detail": "Rule: Age in range, Field: demographics.age",
            }
        }
