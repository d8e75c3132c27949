"""
Integration tests for discrepancy query creation: deduplication, anchors,
assignment, audit entries and rollback.
"""

from concurrent.futures import ThreadPoolExecutor

import psycopg
import pytest

from edc_validation.core.assignment import AssigneeResolver
from edc_validation.core.models import QueryRequest
from edc_validation.core.ports import AuditWriter
from edc_validation.observability.metrics import REGISTRY
from edc_validation.storage import (
    PostgresAuditWriter,
    PostgresFormStore,
    PostgresUserRoleStore,
    PostgresWorkflowRouting,
    QueryWriter,
    SchemaManager,
    query_audit_logs_by_entity,
)


class FailingAuditWriter(AuditWriter):
    def record(self, entity_type, entity_id, action, actor_id, detail, conn=None):
        raise psycopg.DatabaseError("audit log unavailable")


def make_writer(pool, audit_writer=None) -> QueryWriter:
    schema_manager = SchemaManager(pool)
    return QueryWriter(
        pool,
        form_store=PostgresFormStore(pool),
        assignee_resolver=AssigneeResolver(
            PostgresUserRoleStore(pool),
            PostgresWorkflowRouting(pool, schema_manager),
        ),
        audit_writer=audit_writer or PostgresAuditWriter(pool, schema_manager),
        schema_manager=schema_manager,
    )


def make_request(**overrides) -> QueryRequest:
    fields = {
        "study_id": 100,
        "subject_id": 900,
        "form_instance_id": 500,
        "data_point_id": 5001,
        "field_path": "age",
        "rule_name": "Age in range",
        "rule_id": 1,
        "message": "Age must be between 18 and 100",
        "severity": "error",
        "value": "10",
        "actor_id": 1,
        "form_id": 10,
    }
    fields.update(overrides)
    return QueryRequest(**fields)


def query_rows(pool) -> list[dict]:
    return pool.execute_query("SELECT * FROM discrepancy_query ORDER BY query_id")


@pytest.fixture
def writer(clean_db):
    return make_writer(clean_db)


@pytest.mark.integration
class TestCreateQuery:
    """Tests for a newly created query"""

    def test_query_row(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request())

        (row,) = query_rows(clean_db)
        assert row["query_id"] == query_id
        assert row["status"] == "new"
        assert row["check_category"] == "failed_validation"
        assert row["description"] == "Validation Error: Age in range"
        assert row["detailed_notes"] == (
            'Field: age\nValue: "10"\nError: Age must be between 18 and 100\n'
            "Severity: error\nRule: Age in range"
        )
        assert row["owner_id"] == 1
        assert row["data_point_id"] == 5001
        assert row["rule_id"] == 1

    def test_anchors(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request())
        anchors = clean_db.execute_query(
            "SELECT anchor_type, anchor_id, column_name FROM query_anchor WHERE query_id = %s ORDER BY anchor_type",
            (query_id,),
        )
        assert [(a["anchor_type"], a["anchor_id"], a["column_name"]) for a in anchors] == [
            ("data_point", 5001, "value"),
            ("form_instance", 500, "age"),
            ("subject", 900, None),
        ]

    def test_audit_entry(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request())
        entries = query_audit_logs_by_entity(clean_db, "discrepancy_query", query_id)
        assert [(e["action"], e["actor_id"]) for e in entries] == [("query_created", 1)]
        assert entries[0]["detail"] == "Rule: Age in range, Field: age"

    def test_data_point_resolved_from_field_path(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(
            make_request(data_point_id=None, field_path="demographics.Initials", rule_name="Initials format")
        )
        row = clean_db.execute_query("SELECT data_point_id FROM discrepancy_query WHERE query_id = %s", (query_id,))
        assert row[0]["data_point_id"] == 5002

    def test_data_point_resolved_from_item_id(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request(data_point_id=None, item_id=103, field_path="x"))
        row = clean_db.execute_query("SELECT data_point_id FROM discrepancy_query WHERE query_id = %s", (query_id,))
        assert row[0]["data_point_id"] == 5003

    def test_unanchored_query_is_never_deduplicated(self, writer, clean_db):
        request = make_request(data_point_id=None, form_instance_id=None)
        first = writer.create_or_reuse_query(request)
        second = writer.create_or_reuse_query(request)
        assert first != second
        assert [row["data_point_id"] for row in query_rows(clean_db)] == [None, None]


@pytest.mark.integration
class TestDeduplication:
    """Tests for at most one open query per data point and category"""

    def test_open_query_is_reused(self, writer, clean_db):
        first = writer.create_or_reuse_query(make_request())
        second = writer.create_or_reuse_query(make_request(rule_name="Another rule", rule_id=2))
        assert first == second
        assert len(query_rows(clean_db)) == 1

    def test_warning_gets_its_own_category(self, writer, clean_db):
        error_id = writer.create_or_reuse_query(make_request())
        warning_id = writer.create_or_reuse_query(make_request(severity="warning"))
        assert error_id != warning_id
        categories = [row["check_category"] for row in query_rows(clean_db)]
        assert categories == ["failed_validation", "annotation"]

    def test_closed_query_is_not_reused(self, writer, clean_db):
        first = writer.create_or_reuse_query(make_request())
        clean_db.execute_command("UPDATE discrepancy_query SET status = 'closed' WHERE query_id = %s", (first,))

        second = writer.create_or_reuse_query(make_request())
        assert second != first
        assert [q.query_id for q in writer.open_queries_for_data_point(5001)] == [second]

    def test_concurrent_attempts_create_one_query(self, writer, clean_db):
        with ThreadPoolExecutor(max_workers=8) as executor:
            ids = list(executor.map(lambda _: writer.create_or_reuse_query(make_request()), range(16)))

        assert None not in ids
        assert len(set(ids)) == 1
        assert len(query_rows(clean_db)) == 1
        assert len(query_audit_logs_by_entity(clean_db, "discrepancy_query", ids[0])) == 1


@pytest.mark.integration
class TestAssignment:
    """Tests for the assignee chosen for a new query"""

    def assignee(self, pool, query_id):
        rows = pool.execute_query("SELECT assigned_user_id FROM discrepancy_query WHERE query_id = %s", (query_id,))
        return rows[0]["assigned_user_id"]

    def test_ranked_study_coordinator(self, writer, clean_db):
        """The enabled coordinator outranks the data manager granted earlier"""
        query_id = writer.create_or_reuse_query(make_request())
        assert self.assignee(clean_db, query_id) == 2

    def test_explicit_assignee(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request(assigned_user_id=3))
        assert self.assignee(clean_db, query_id) == 3

    def test_workflow_routing(self, writer, clean_db):
        clean_db.execute_command(
            "INSERT INTO form_workflow_config (form_id, study_id, route_to_user_id) VALUES (10, NULL, 3)"
        )
        clean_db.execute_command(
            "INSERT INTO form_workflow_config (form_id, study_id, route_to_username) VALUES (10, 100, 'router')"
        )
        query_id = writer.create_or_reuse_query(make_request())
        assert self.assignee(clean_db, query_id) == 5

    def test_study_without_users_is_unassigned(self, writer, clean_db):
        query_id = writer.create_or_reuse_query(make_request(study_id=999, form_id=None))
        assert self.assignee(clean_db, query_id) is None


@pytest.mark.integration
class TestRollback:
    """Tests for all-or-nothing query creation"""

    def test_failure_after_insert_leaves_nothing(self, clean_db):
        before = REGISTRY.get_sample_value(
            "edc_queries_total", {"category": "failed_validation", "outcome": "failed"}
        ) or 0.0
        writer = make_writer(clean_db, audit_writer=FailingAuditWriter())

        assert writer.create_or_reuse_query(make_request()) is None

        assert query_rows(clean_db) == []
        assert clean_db.execute_query("SELECT COUNT(*) AS n FROM query_anchor")[0]["n"] == 0
        after = REGISTRY.get_sample_value("edc_queries_total", {"category": "failed_validation", "outcome": "failed"})
        assert after == before + 1

    def test_next_attempt_succeeds_after_failure(self, clean_db):
        make_writer(clean_db, audit_writer=FailingAuditWriter()).create_or_reuse_query(make_request())
        query_id = make_writer(clean_db).create_or_reuse_query(make_request())
        assert query_id is not None
        assert len(query_rows(clean_db)) == 1
