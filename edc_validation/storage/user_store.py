"""
Study users and per-form workflow routing.

``study_user_role`` and ``user_account`` belong to the platform;
``form_workflow_config`` is provisioned by ``SchemaManager``.
"""

from ..core.ports import ActiveUser, UserRoleStore, WorkflowRoute, WorkflowRoutingSource
from .connection import DatabaseConnectionPool
from .schema_mgmt import SchemaManager


class PostgresUserRoleStore(UserRoleStore):
    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def active_users_for_study(self, study_id: int) -> list[ActiveUser]:
        """Active, enabled users of a study in the order their roles were granted."""
        query = """
            SELECT u.user_id, u.username, r.role_name AS role
            FROM study_user_role r
            JOIN user_account u ON u.user_id = r.user_id
            WHERE r.study_id = %(study_id)s
              AND r.status = 'active'
              AND u.enabled
            ORDER BY r.created_at, r.study_user_role_id
        """
        rows = self.pool.execute_query(query, {"study_id": study_id})
        return [ActiveUser(**row) for row in rows]

    def user_id_for_username(self, username: str) -> int | None:
        query = """
            SELECT user_id
            FROM user_account
            WHERE username = %(username)s
              AND enabled
        """
        rows = self.pool.execute_query(query, {"username": username})
        return rows[0]["user_id"] if rows else None


class PostgresWorkflowRouting(WorkflowRoutingSource):
    def __init__(self, pool: DatabaseConnectionPool, schema_manager: SchemaManager | None = None):
        self.pool = pool
        self.schema_manager = schema_manager or SchemaManager(pool)

    def route_for_form(self, form_id: int, study_id: int | None) -> WorkflowRoute | None:
        self.schema_manager.ensure_schema()
        # A study-specific row sorts ahead of the global (NULL study) row.
        query = """
            SELECT form_id, study_id, route_to_username, route_to_user_id
            FROM form_workflow_config
            WHERE form_id = %(form_id)s
              AND (study_id = %(study_id)s OR study_id IS NULL)
            ORDER BY study_id NULLS LAST, config_id
            LIMIT 1
        """
        rows = self.pool.execute_query(query, {"form_id": form_id, "study_id": study_id})
        return WorkflowRoute(**rows[0]) if rows else None
