"""
Discrepancy query creation with deduplication.

At most one open query exists per (data point, check category). Each
create-or-reuse attempt runs in its own transaction:

1. resolve the data point (explicit id, else item id, else name/OID in the
   form instance)
2. take a transaction-scoped advisory lock on (data point, category) and
   return the open query anchored there, if any
3. resolve the assignee and insert the query; a concurrent winner is
   detected through the partial unique index and re-read
4. anchor the query to its data point, form instance and subject
5. append an audit entry
6. commit

Any failure rolls the whole attempt back and yields None.
"""

import json
import time
from typing import Any

import psycopg

from ..core.assignment import AssigneeResolver
from ..core.models import (
    CLOSED_STATUSES,
    AnchorType,
    DiscrepancyQuery,
    QueryRequest,
    QueryStatus,
)
from ..core.ports import AuditWriter, FormStore, QueryCreator
from ..observability.logger import get_logger
from ..observability.metrics import (
    observe_histogram,
    query_write_duration_seconds,
    record_query_outcome,
)
from .connection import DatabaseConnectionPool
from .schema_mgmt import SchemaManager

logger = get_logger(__name__)

QUERY_ENTITY = "discrepancy_query"

FIND_OPEN_QUERY_SQL = """
    SELECT q.query_id
    FROM discrepancy_query q
    JOIN query_anchor a ON a.query_id = q.query_id
    WHERE a.anchor_type = %(anchor_type)s
      AND a.anchor_id = %(data_point_id)s
      AND q.check_category = %(category)s
      AND q.status <> ALL(%(closed)s)
    ORDER BY q.query_id
    LIMIT 1
"""

INSERT_QUERY_SQL = """
    INSERT INTO discrepancy_query (
        study_id, subject_id, form_instance_id, data_point_id, check_category,
        status, description, detailed_notes, field_path, rule_name, rule_id,
        owner_id, assigned_user_id, created_at
    ) VALUES (
        %(study_id)s, %(subject_id)s, %(form_instance_id)s, %(data_point_id)s,
        %(category)s, %(status)s, %(description)s, %(detailed_notes)s,
        %(field_path)s, %(rule_name)s, %(rule_id)s, %(owner_id)s,
        %(assigned_user_id)s, CURRENT_TIMESTAMP
    )
    ON CONFLICT (data_point_id, check_category)
        WHERE data_point_id IS NOT NULL AND status NOT IN ('closed', 'not_applicable')
        DO NOTHING
    RETURNING query_id
"""

INSERT_ANCHOR_SQL = """
    INSERT INTO query_anchor (query_id, anchor_type, anchor_id, column_name)
    VALUES (%(query_id)s, %(anchor_type)s, %(anchor_id)s, %(column_name)s)
    ON CONFLICT (query_id, anchor_type, anchor_id) DO NOTHING
"""


def detailed_notes(request: QueryRequest) -> str:
    """Free-text body of a new query."""
    label = "Warning" if request.severity == "warning" else "Error"
    return (
        f"Field: {request.field_path}\n"
        f"Value: {json.dumps(request.value, default=str)}\n"
        f"{label}: {request.message}\n"
        f"Severity: {request.severity}\n"
        f"Rule: {request.rule_name}"
    )


class QueryWriter(QueryCreator):
    """
    Creates discrepancy queries, reusing an open one on the same data point.

    Example:
        writer = QueryWriter(pool, form_store=PostgresFormStore(pool),
                             assignee_resolver=AssigneeResolver(users, routing),
                             audit_writer=PostgresAuditWriter(pool))
        query_id = writer.create_or_reuse_query(request)
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        form_store: FormStore | None = None,
        assignee_resolver: AssigneeResolver | None = None,
        audit_writer: AuditWriter | None = None,
        schema_manager: SchemaManager | None = None,
    ):
        self.pool = pool
        self.form_store = form_store
        self.assignee_resolver = assignee_resolver or AssigneeResolver()
        self.audit_writer = audit_writer
        self.schema_manager = schema_manager or SchemaManager(pool)

    def create_or_reuse_query(self, request: QueryRequest) -> int | None:
        """
        Create a query for a failed rule, or return the open one already there.

        Returns:
            Query id, or None when the attempt failed and was rolled back
        """
        category = request.category.value
        started = time.monotonic()
        try:
            self.schema_manager.ensure_schema()
            with self.pool.transaction() as conn:
                query_id, outcome = self._create_or_reuse(conn, request)
        except Exception as e:
            logger.error(
                "Query creation failed, rolled back",
                extra={
                    "study_id": request.study_id,
                    "form_instance_id": request.form_instance_id,
                    "field_path": request.field_path,
                    "rule_name": request.rule_name,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            record_query_outcome(category, "failed")
            return None
        finally:
            observe_histogram(query_write_duration_seconds, time.monotonic() - started)

        record_query_outcome(category, outcome)
        logger.info(
            "Query reused" if outcome == "reused" else "Query created",
            extra={
                "query_id": query_id,
                "check_category": category,
                "field_path": request.field_path,
                "rule_name": request.rule_name,
            },
        )
        return query_id

    def _create_or_reuse(self, conn: psycopg.Connection, request: QueryRequest) -> tuple[int, str]:
        category = request.category.value
        data_point_id = self._resolve_data_point(conn, request)

        if data_point_id is not None:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT pg_advisory_xact_lock(%(data_point_id)s, hashtext(%(category)s))",
                    {"data_point_id": data_point_id, "category": category},
                )
            existing = self._find_open_query(conn, data_point_id, category)
            if existing is not None:
                return existing, "reused"

        assignee = self.assignee_resolver.resolve_assignee(
            request.study_id,
            request.subject_id,
            explicit_assignee=request.assigned_user_id,
            form_id=request.form_id,
        )

        params = {
            "study_id": request.study_id,
            "subject_id": request.subject_id,
            "form_instance_id": request.form_instance_id,
            "data_point_id": data_point_id,
            "category": category,
            "status": QueryStatus.NEW.value,
            "description": request.description(),
            "detailed_notes": detailed_notes(request),
            "field_path": request.field_path,
            "rule_name": request.rule_name,
            "rule_id": request.rule_id,
            "owner_id": request.actor_id,
            "assigned_user_id": assignee,
        }
        with conn.cursor() as cur:
            cur.execute(INSERT_QUERY_SQL, params)
            row = cur.fetchone()

        if row is None:
            # Another transaction holds the open query for this data point.
            winner = self._find_open_query(conn, data_point_id, category, anchored=False)
            if winner is None:
                raise RuntimeError(
                    f"Open query for data point {data_point_id} conflicted but could not be re-read"
                )
            return winner, "reused"

        query_id = row["query_id"]
        self._insert_anchors(conn, query_id, request, data_point_id)
        if self.audit_writer is not None:
            self.audit_writer.record(
                QUERY_ENTITY,
                query_id,
                "query_created",
                request.actor_id,
                f"Rule: {request.rule_name}, Field: {request.field_path}",
                conn=conn,
            )
        return query_id, "created"

    def _resolve_data_point(self, conn: psycopg.Connection, request: QueryRequest) -> int | None:
        if request.data_point_id is not None:
            return request.data_point_id
        if request.form_instance_id is None or self.form_store is None:
            return None
        return self.form_store.find_data_point_id(
            request.form_instance_id,
            item_id=request.item_id,
            field_path=request.field_path,
            conn=conn,
        )

    @staticmethod
    def _find_open_query(
        conn: psycopg.Connection,
        data_point_id: int,
        category: str,
        anchored: bool = True,
    ) -> int | None:
        if anchored:
            sql = FIND_OPEN_QUERY_SQL
            params: dict[str, Any] = {
                "anchor_type": AnchorType.DATA_POINT.value,
                "data_point_id": data_point_id,
                "category": category,
                "closed": list(CLOSED_STATUSES),
            }
        else:
            sql = """
                SELECT query_id
                FROM discrepancy_query
                WHERE data_point_id = %(data_point_id)s
                  AND check_category = %(category)s
                  AND status <> ALL(%(closed)s)
                LIMIT 1
            """
            params = {"data_point_id": data_point_id, "category": category, "closed": list(CLOSED_STATUSES)}
        with conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return row["query_id"] if row else None

    @staticmethod
    def _insert_anchors(
        conn: psycopg.Connection,
        query_id: int,
        request: QueryRequest,
        data_point_id: int | None,
    ) -> None:
        anchors = [
            (AnchorType.DATA_POINT, data_point_id, "value"),
            (AnchorType.FORM_INSTANCE, request.form_instance_id, request.field_path),
            (AnchorType.SUBJECT, request.subject_id, None),
        ]
        with conn.cursor() as cur:
            for anchor_type, anchor_id, column_name in anchors:
                if anchor_id is None:
                    continue
                cur.execute(
                    INSERT_ANCHOR_SQL,
                    {
                        "query_id": query_id,
                        "anchor_type": anchor_type.value,
                        "anchor_id": anchor_id,
                        "column_name": column_name,
                    },
                )

    def open_queries_for_data_point(self, data_point_id: int) -> list[DiscrepancyQuery]:
        """Open queries anchored to a data point, oldest first."""
        self.schema_manager.ensure_schema()
        query = """
            SELECT q.query_id, q.study_id, q.subject_id, q.form_instance_id, q.data_point_id,
                   q.check_category, q.status, q.description, q.detailed_notes, q.field_path,
                   q.rule_name, q.owner_id, q.assigned_user_id, q.created_at
            FROM discrepancy_query q
            JOIN query_anchor a ON a.query_id = q.query_id
            WHERE a.anchor_type = %(anchor_type)s
              AND a.anchor_id = %(data_point_id)s
              AND q.status <> ALL(%(closed)s)
            ORDER BY q.query_id
        """
        rows = self.pool.execute_query(
            query,
            {
                "anchor_type": AnchorType.DATA_POINT.value,
                "data_point_id": data_point_id,
                "closed": list(CLOSED_STATUSES),
            },
        )
        return [DiscrepancyQuery(**row) for row in rows]
