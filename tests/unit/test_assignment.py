"""
Unit tests for query assignee resolution and the workflow trigger.
"""

import threading

from edc_validation.config import EngineSettings
from edc_validation.core.assignment import AssigneeResolver, normalise_role, rank_candidates, role_rank
from edc_validation.core.notifications import BackgroundWorkflowTrigger, NullWorkflowTrigger
from edc_validation.core.ports import (
    ActiveUser,
    FormSavedEvent,
    UserRoleStore,
    WorkflowRoute,
    WorkflowRoutingSource,
)
from edc_validation.observability.metrics import REGISTRY


class StaticUsers(UserRoleStore):
    def __init__(self, users=None, usernames=None, error=None):
        self.users = users or []
        self.usernames = usernames or {}
        self.error = error

    def active_users_for_study(self, study_id):
        if self.error:
            raise self.error
        return list(self.users)

    def user_id_for_username(self, username):
        return self.usernames.get(username)


class StaticRouting(WorkflowRoutingSource):
    def __init__(self, route=None, error=None):
        self.route = route
        self.error = error

    def route_for_form(self, form_id, study_id):
        if self.error:
            raise self.error
        return self.route


STUDY_USERS = [
    ActiveUser(user_id=3, role="Data Manager"),
    ActiveUser(user_id=8, role="Monitor"),
    ActiveUser(user_id=2, role="Study Coordinator"),
    ActiveUser(user_id=4, role="CRA"),
]


def degraded(collaborator: str) -> float:
    return REGISTRY.get_sample_value("edc_collaborator_degraded_total", {"collaborator": collaborator}) or 0.0


class TestRoleRanking:
    """Tests for role normalisation and ranking"""

    def test_normalise(self):
        assert normalise_role(" Clinical Research-Coordinator ") == "clinical_research_coordinator"
        assert normalise_role(None) == ""

    def test_ranks(self):
        assert role_rank("coordinator") == 0
        assert role_rank("CRC") == 1
        assert role_rank("data manager") == 2
        assert role_rank("Investigator") == 3

    def test_ties_keep_store_order(self):
        users = [ActiveUser(user_id=5, role="CRA"), ActiveUser(user_id=6, role="crc")]
        assert [u.user_id for u in rank_candidates(users)] == [5, 6]


class TestAssigneeResolver:
    """Tests for the assignee priority chain"""

    def test_explicit_assignee_wins(self):
        resolver = AssigneeResolver(StaticUsers(STUDY_USERS), StaticRouting(WorkflowRoute(form_id=1, route_to_user_id=9)))
        assert resolver.resolve_assignee(100, explicit_assignee=42, form_id=1) == 42

    def test_routing_by_user_id(self):
        resolver = AssigneeResolver(StaticUsers(STUDY_USERS), StaticRouting(WorkflowRoute(form_id=1, route_to_user_id=9)))
        assert resolver.resolve_assignee(100, form_id=1) == 9

    def test_routing_by_username(self):
        route = WorkflowRoute(form_id=1, route_to_username="router")
        resolver = AssigneeResolver(StaticUsers(STUDY_USERS, {"router": 5}), StaticRouting(route))
        assert resolver.resolve_assignee(100, form_id=1) == 5

    def test_routing_to_unknown_user_falls_back_to_ranking(self):
        route = WorkflowRoute(form_id=1, route_to_username="ghost")
        resolver = AssigneeResolver(StaticUsers(STUDY_USERS), StaticRouting(route))
        assert resolver.resolve_assignee(100, form_id=1) == 2

    def test_role_ranking(self):
        assert AssigneeResolver(StaticUsers(STUDY_USERS)).resolve_assignee(100) == 2

    def test_nobody_qualifies(self):
        assert AssigneeResolver(StaticUsers([])).resolve_assignee(100) is None
        assert AssigneeResolver().resolve_assignee(100) is None

    def test_routing_failure_degrades(self):
        before = degraded("workflow_routing")
        resolver = AssigneeResolver(StaticUsers(STUDY_USERS), StaticRouting(error=ConnectionError("down")))
        assert resolver.resolve_assignee(100, form_id=1) == 2
        assert degraded("workflow_routing") == before + 1

    def test_user_store_failure_leaves_query_unassigned(self):
        before = degraded("user_role_store")
        resolver = AssigneeResolver(StaticUsers(error=ConnectionError("down")))
        assert resolver.resolve_assignee(100) is None
        assert degraded("user_role_store") == before + 1


class TestWorkflowTriggers:
    """Tests for the form-saved triggers"""

    def test_null_trigger(self):
        NullWorkflowTrigger().form_saved(FormSavedEvent(form_id=1, form_instance_id=2))

    def test_background_trigger_runs_handler(self):
        received = []
        done = threading.Event()

        def handler(event):
            received.append(event.form_instance_id)
            done.set()

        trigger = BackgroundWorkflowTrigger(handler, max_workers=1)
        trigger.form_saved(FormSavedEvent(form_id=1, form_instance_id=2))
        assert done.wait(timeout=5)
        trigger.shutdown()
        assert received == [2]

    def test_handler_failure_is_logged_not_raised(self):
        before = degraded("workflow_trigger")

        def handler(event):
            raise RuntimeError("workflow down")

        trigger = BackgroundWorkflowTrigger(handler, max_workers=1)
        trigger.form_saved(FormSavedEvent(form_id=1, form_instance_id=2))
        trigger.shutdown(wait=True)
        assert degraded("workflow_trigger") == before + 1

    def test_after_shutdown(self):
        trigger = BackgroundWorkflowTrigger(lambda event: None)
        trigger.shutdown()
        before = degraded("workflow_trigger")
        trigger.form_saved(FormSavedEvent(form_id=1, form_instance_id=2))
        assert degraded("workflow_trigger") == before + 1

    def test_trigger_sized_from_settings(self):
        received = []
        done = threading.Event()

        def handler(event):
            received.append(event.form_id)
            done.set()

        trigger = BackgroundWorkflowTrigger.from_settings(handler, EngineSettings(workflow_workers=3))
        assert trigger.max_workers == 3
        trigger.form_saved(FormSavedEvent(form_id=9, form_instance_id=2))
        assert done.wait(timeout=5)
        trigger.shutdown()
        assert received == [9]
