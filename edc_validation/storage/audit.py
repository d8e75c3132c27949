"""
Audit log operations for rule mutations and created queries.

This module provides functions to insert and query audit log entries, plus
the ``AuditWriter`` implementation the rule store and query writer use.
"""

from typing import Any

import psycopg
from psycopg.rows import dict_row

from ..core.models.audit_log import AuditLog
from ..core.ports import AuditWriter
from ..observability.logger import get_logger
from .connection import DatabaseConnectionPool
from .schema_mgmt import SchemaManager

logger = get_logger(__name__)

INSERT_AUDIT_SQL = """
    INSERT INTO audit_log (
        entity_type,
        entity_id,
        action,
        actor_id,
        detail,
        created_at
    ) VALUES (
        %(entity_type)s,
        %(entity_id)s,
        %(action)s,
        %(actor_id)s,
        %(detail)s,
        %(created_at)s
    ) RETURNING log_id;
"""


def _audit_params(audit_log: AuditLog) -> dict[str, Any]:
    return {
        "entity_type": audit_log.entity_type,
        "entity_id": audit_log.entity_id,
        "action": audit_log.action,
        "actor_id": audit_log.actor_id,
        "detail": audit_log.detail,
        "created_at": audit_log.created_at,
    }


def insert_audit_log(
    pool: DatabaseConnectionPool,
    audit_log: AuditLog,
    conn: psycopg.Connection | None = None,
) -> int:
    """
    Insert a single audit log entry into the database.

    Args:
        pool: Database connection pool
        audit_log: AuditLog model instance
        conn: Open connection; when given the insert joins the caller's
            transaction and is not committed here

    Returns:
        log_id: Generated log ID

    Raises:
        psycopg.DatabaseError: If insert fails
    """
    try:
        if conn is not None:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(INSERT_AUDIT_SQL, _audit_params(audit_log))
                result = cur.fetchone()
        else:
            with pool.transaction() as own_conn:
                with own_conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(INSERT_AUDIT_SQL, _audit_params(audit_log))
                    result = cur.fetchone()

        log_id = result["log_id"] if result else None
        logger.debug(
            f"Inserted audit log entry: log_id={log_id}, "
            f"entity={audit_log.entity_type}:{audit_log.entity_id}, action={audit_log.action}"
        )
        return log_id

    except psycopg.DatabaseError as e:
        logger.error(f"Failed to insert audit log: {e}")
        raise


def query_audit_logs_by_entity(
    pool: DatabaseConnectionPool,
    entity_type: str,
    entity_id: int,
    limit: int = 100
) -> list[dict[str, Any]]:
    """
    Query audit log entries for one entity.

    Args:
        pool: Database connection pool
        entity_type: "validation_rule" or "discrepancy_query"
        entity_id: Primary key of the entity
        limit: Maximum number of entries to return

    Returns:
        List of audit log entries as dictionaries, oldest first

    Raises:
        psycopg.DatabaseError: If query fails
    """
    query_sql = """
        SELECT
            log_id,
            entity_type,
            entity_id,
            action,
            actor_id,
            detail,
            created_at
        FROM audit_log
        WHERE entity_type = %(entity_type)s
          AND entity_id = %(entity_id)s
        ORDER BY log_id
        LIMIT %(limit)s;
    """

    try:
        with pool.get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    query_sql,
                    {"entity_type": entity_type, "entity_id": entity_id, "limit": limit}
                )
                results = cur.fetchall()

                logger.debug(
                    f"Found {len(results)} audit log entries for {entity_type}:{entity_id}"
                )

                return results

    except psycopg.DatabaseError as e:
        logger.error(f"Failed to query audit logs by entity: {e}")
        raise


class PostgresAuditWriter(AuditWriter):
    """Audit writer backed by the ``audit_log`` table."""

    def __init__(self, pool: DatabaseConnectionPool, schema_manager: SchemaManager | None = None):
        self.pool = pool
        self.schema_manager = schema_manager or SchemaManager(pool)

    def record(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None,
        detail: str | None,
        conn: Any = None,
    ) -> int:
        if conn is None:
            self.schema_manager.ensure_schema()
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            detail=detail,
        )
        return insert_audit_log(self.pool, entry, conn=conn)
