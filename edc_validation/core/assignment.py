"""
Assignee resolution for newly created queries.

Priority, first hit wins:
1. an assignee supplied explicitly by the caller
2. the form's workflow routing (a study-specific row beats a global one)
3. the first active study user ranked by role: coordinator, then clinical
   research coordinator / CRA, then data manager, then any other role
4. nobody (the query is created unassigned)
"""

import re

from ..observability.logger import get_logger
from ..observability.metrics import record_degraded
from .ports import ActiveUser, UserRoleStore, WorkflowRoutingSource

logger = get_logger(__name__)

ROLE_RANKS: dict[str, int] = {
    "study_coordinator": 0,
    "coordinator": 0,
    "clinical_research_coordinator": 1,
    "crc": 1,
    "cra": 1,
    "clinical_research_associate": 1,
    "data_manager": 2,
    "datamanager": 2,
}
OTHER_ROLE_RANK = 3


def normalise_role(role: str | None) -> str:
    """'Clinical Research Coordinator' -> 'clinical_research_coordinator'."""
    return re.sub(r"[\s\-]+", "_", (role or "").strip().lower())


def role_rank(role: str | None) -> int:
    return ROLE_RANKS.get(normalise_role(role), OTHER_ROLE_RANK)


def rank_candidates(users: list[ActiveUser]) -> list[ActiveUser]:
    """Candidates ordered by role rank; ties keep store order."""
    return sorted(users, key=lambda user: role_rank(user.role))


class AssigneeResolver:
    """
    Deterministic choice of the user responsible for a new query.

    Both collaborators are optional; an unavailable collaborator degrades to
    the next step with a logged warning.
    """

    def __init__(
        self,
        user_store: UserRoleStore | None = None,
        routing: WorkflowRoutingSource | None = None,
    ):
        self.user_store = user_store
        self.routing = routing

    def resolve_assignee(
        self,
        study_id: int,
        subject_id: int | None = None,
        *,
        explicit_assignee: int | None = None,
        form_id: int | None = None,
    ) -> int | None:
        """
        Choose an assignee.

        Args:
            study_id: Study the query belongs to
            subject_id: Subject the query is about (recorded in logs only)
            explicit_assignee: Caller-supplied assignee, always wins
            form_id: Form the failing rule belongs to, for workflow routing

        Returns:
            User id, or None when nobody qualifies
        """
        if explicit_assignee is not None:
            return explicit_assignee

        routed = self._routed_assignee(form_id, study_id)
        if routed is not None:
            logger.info(
                "Query routed by form workflow",
                extra={"form_id": form_id, "study_id": study_id, "user_id": routed},
            )
            return routed

        return self._ranked_assignee(study_id, subject_id)

    def _routed_assignee(self, form_id: int | None, study_id: int) -> int | None:
        if self.routing is None or form_id is None:
            return None
        try:
            route = self.routing.route_for_form(form_id, study_id)
            if route is None:
                return None
            if route.route_to_user_id is not None:
                return route.route_to_user_id
            if not route.route_to_username or self.user_store is None:
                return None
            user_id = self.user_store.user_id_for_username(route.route_to_username)
        except Exception as e:
            logger.warning(
                "Workflow routing unavailable, falling back to role ranking",
                extra={"form_id": form_id, "study_id": study_id, "error_message": str(e)},
            )
            record_degraded("workflow_routing")
            return None

        if user_id is None:
            logger.warning(
                "Workflow routing names a user that is not active",
                extra={"form_id": form_id, "username": route.route_to_username},
            )
        return user_id

    def _ranked_assignee(self, study_id: int, subject_id: int | None) -> int | None:
        if self.user_store is None:
            return None
        try:
            users = self.user_store.active_users_for_study(study_id)
        except Exception as e:
            logger.warning(
                "User/role store unavailable, query left unassigned",
                extra={"study_id": study_id, "subject_id": subject_id, "error_message": str(e)},
            )
            record_degraded("user_role_store")
            return None

        ranked = rank_candidates(users)
        return ranked[0].user_id if ranked else None
