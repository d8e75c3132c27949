"""
Schema provisioning for the tables owned by this package.

The rules, queries, anchors, audit and workflow-routing tables are created
lazily the first time a store needs them. The EDC platform's own tables
(forms, items, data points, users) are expected to exist already.
"""

import threading

from ..observability.logger import get_logger
from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

OWNED_TABLES = (
    "validation_rule",
    "discrepancy_query",
    "query_anchor",
    "audit_log",
    "form_workflow_config",
)

SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS validation_rule (
        rule_id SERIAL PRIMARY KEY,
        form_id INTEGER NOT NULL,
        form_version_id INTEGER,
        item_id INTEGER,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        rule_type VARCHAR(50) NOT NULL,
        field_path VARCHAR(500) NOT NULL,
        severity VARCHAR(20) NOT NULL DEFAULT 'error'
            CHECK (severity IN ('error', 'warning')),
        error_message TEXT NOT NULL,
        warning_message TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        value_kind VARCHAR(20) NOT NULL DEFAULT 'numeric'
            CHECK (value_kind IN ('numeric', 'date')),
        min_value NUMERIC,
        max_value NUMERIC,
        min_date DATE,
        max_date DATE,
        pattern TEXT,
        format_type VARCHAR(50),
        operator VARCHAR(10),
        compare_field_path VARCHAR(500),
        custom_expression TEXT,
        owner_id INTEGER,
        updated_by INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_validation_rule_form
        ON validation_rule (form_id, active)
    """,
    """
    CREATE TABLE IF NOT EXISTS discrepancy_query (
        query_id SERIAL PRIMARY KEY,
        study_id INTEGER NOT NULL,
        subject_id INTEGER,
        form_instance_id INTEGER,
        data_point_id INTEGER,
        check_category VARCHAR(30) NOT NULL,
        status VARCHAR(30) NOT NULL DEFAULT 'new',
        description VARCHAR(500) NOT NULL,
        detailed_notes TEXT,
        field_path VARCHAR(500),
        rule_name VARCHAR(255),
        rule_id INTEGER,
        owner_id INTEGER NOT NULL,
        assigned_user_id INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_open_query_per_data_point
        ON discrepancy_query (data_point_id, check_category)
        WHERE data_point_id IS NOT NULL
          AND status NOT IN ('closed', 'not_applicable')
    """,
    """
    CREATE TABLE IF NOT EXISTS query_anchor (
        query_anchor_id SERIAL PRIMARY KEY,
        query_id INTEGER NOT NULL REFERENCES discrepancy_query (query_id) ON DELETE CASCADE,
        anchor_type VARCHAR(30) NOT NULL,
        anchor_id INTEGER NOT NULL,
        column_name VARCHAR(255),
        UNIQUE (query_id, anchor_type, anchor_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_query_anchor_lookup
        ON query_anchor (anchor_type, anchor_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        log_id BIGSERIAL PRIMARY KEY,
        entity_type VARCHAR(50) NOT NULL,
        entity_id INTEGER NOT NULL,
        action VARCHAR(50) NOT NULL,
        actor_id INTEGER,
        detail TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_entity
        ON audit_log (entity_type, entity_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS form_workflow_config (
        config_id SERIAL PRIMARY KEY,
        form_id INTEGER NOT NULL,
        study_id INTEGER,
        route_to_username VARCHAR(255),
        route_to_user_id INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class SchemaManager:
    """
    Creates the package-owned tables once per manager.

    Handles:
    - Idempotent DDL (CREATE ... IF NOT EXISTS)
    - Caching the "already provisioned" state per instance
    - Listing which owned tables exist
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize schema manager.

        Args:
            pool: Database connection pool
        """
        self.pool = pool
        self._ready = False
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure_schema(self) -> None:
        """
        Create owned tables and indexes if they are missing.

        Safe to call on every request; after the first success it returns
        without touching the database.

        Raises:
            psycopg.DatabaseError: If the DDL fails
        """
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            with self.pool.transaction() as conn:
                with conn.cursor() as cur:
                    for statement in SCHEMA_DDL:
                        cur.execute(statement)
            self._ready = True
            logger.info("Validation schema ready", extra={"tables": list(OWNED_TABLES)})

    def existing_tables(self) -> list[str]:
        """Owned tables present in the current schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = current_schema()
              AND table_name = ANY(%s)
            ORDER BY table_name
        """
        rows = self.pool.execute_query(query, (list(OWNED_TABLES),))
        return [row["table_name"] for row in rows]
