"""
Collaborator interfaces consumed by the validation engine.

The engine never talks to the EDC platform's tables directly; it goes through
these narrow interfaces. Postgres implementations live in
``edc_validation.storage``; tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from .models import QueryRequest, Rule


class FormItem(BaseModel):
    """
    One field of the active version of a form.

    Attributes:
        item_id: Stored item identifier
        name: Field name as authored
        oid: Stable object identifier used by exports and legacy imports
        required: Whether the item metadata marks the field as required
        regexp: Validation pattern from item metadata (may be an encoded formula)
        regexp_error_message: Message shown when the pattern fails
    """

    item_id: int
    name: str
    oid: str | None = None
    required: bool = False
    regexp: str | None = None
    regexp_error_message: str | None = None


class DataPoint(BaseModel):
    """A stored answer inside a form instance."""

    data_point_id: int
    item_id: int
    name: str
    oid: str | None = None
    value: Any = None


class FormInstance(BaseModel):
    """One occurrence of a form filled in for a subject."""

    form_instance_id: int
    form_id: int
    form_version_id: int | None = None
    study_id: int | None = None
    subject_id: int | None = None


class FormSummary(BaseModel):
    """A form (CRF) of a study."""

    form_id: int
    name: str
    owner_id: int | None = None


class StudyFormRules(BaseModel):
    """Merged rules of one form, as listed for a study."""

    form_id: int
    form_name: str
    rules: list[Rule] = Field(default_factory=list)


class ActiveUser(BaseModel):
    """A user with an active role on a study."""

    user_id: int
    role: str
    username: str | None = None


class WorkflowRoute(BaseModel):
    """Per-form routing configuration for new queries."""

    form_id: int
    study_id: int | None = None
    route_to_username: str | None = None
    route_to_user_id: int | None = None


class FormSavedEvent(BaseModel):
    """Notification emitted after a submission was accepted and persisted."""

    form_id: int
    form_instance_id: int
    study_id: int | None = None
    subject_id: int | None = None
    user_id: int | None = None
    operation_type: str = "update"
    warnings: list[str] = Field(default_factory=list)


class FormStore(ABC):
    """Read access to forms, their items and submitted data."""

    @abstractmethod
    def get_active_version_items(self, form_id: int) -> list[FormItem]:
        """Items of the active version of a form."""

    @abstractmethod
    def get_submitted_values(self, form_instance_id: int) -> dict[str, Any]:
        """Submitted values of a form instance keyed by field name."""

    @abstractmethod
    def data_points_for_instance(self, form_instance_id: int) -> list[DataPoint]:
        """Stored data points of a form instance."""

    @abstractmethod
    def find_data_point_id(
        self,
        form_instance_id: int,
        *,
        item_id: int | None = None,
        field_path: str | None = None,
        conn: Any = None,
    ) -> int | None:
        """
        Locate a data point inside a form instance.

        Args:
            form_instance_id: Form instance to search
            item_id: Stored item id, tried first
            field_path: Field name or OID, tried when item_id finds nothing
            conn: Open connection to run inside the caller's transaction
        """

    @abstractmethod
    def get_form_instance(self, form_instance_id: int) -> FormInstance | None:
        """Form instance header, or None when unknown."""

    @abstractmethod
    def form_owner_id(self, form_id: int) -> int | None:
        """User that owns (authored) a form."""

    @abstractmethod
    def forms_for_study(self, study_id: int) -> list[FormSummary]:
        """Forms of a study ordered by form id."""


class AuditWriter(ABC):
    @abstractmethod
    def record(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None,
        detail: str | None,
        conn: Any = None,
    ) -> int:
        """Append one audit entry and return its id."""


class WorkflowTrigger(ABC):
    @abstractmethod
    def form_saved(self, event: FormSavedEvent) -> None:
        """Fire-and-forget notification. Must not raise into the caller."""


class UserRoleStore(ABC):
    @abstractmethod
    def active_users_for_study(self, study_id: int) -> list[ActiveUser]:
        """Users with an active role on the study, in store order."""

    @abstractmethod
    def user_id_for_username(self, username: str) -> int | None:
        """Enabled user with this username, or None."""


class WorkflowRoutingSource(ABC):
    @abstractmethod
    def route_for_form(self, form_id: int, study_id: int | None) -> WorkflowRoute | None:
        """Routing configuration for a form; a study-specific row beats a global one."""


class CallerScope(BaseModel):
    """
    Visibility of the calling user.

    Attributes:
        user_id: Calling user
        member_user_ids: Users in the caller's organisation; None means
            unscoped (administrators, internal jobs)
    """

    user_id: int | None = None
    member_user_ids: frozenset[int] | None = None

    @property
    def unscoped(self) -> bool:
        return self.member_user_ids is None

    def can_see(self, owner_id: int | None) -> bool:
        """Whether something owned by owner_id is visible to the caller."""
        if self.member_user_ids is None or owner_id is None:
            return True
        return owner_id in self.member_user_ids


class RuleProvider(ABC):
    @abstractmethod
    def rules_for_form(
        self,
        form_id: int,
        scope: CallerScope | None = None,
        form_version_id: int | None = None,
    ) -> list[Rule]:
        """Merged rules of a form visible to the caller, inactive ones included."""


class QueryCreator(ABC):
    @abstractmethod
    def create_or_reuse_query(self, request: QueryRequest) -> int | None:
        """Id of the new or reused open query, or None when creation failed."""
