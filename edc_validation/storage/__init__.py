"""
PostgreSQL adapters: connection pool, schema, rule store, form and user
stores, audit writer and query writer.
"""

from .audit import PostgresAuditWriter, insert_audit_log, query_audit_logs_by_entity
from .connection import DatabaseConnectionPool, close_pool, get_pool, initialize_pool
from .form_store import PostgresFormStore
from .query_writer import QueryWriter
from .rule_store import RuleStore
from .schema_mgmt import SchemaManager
from .user_store import PostgresUserRoleStore, PostgresWorkflowRouting

__all__ = [
    "DatabaseConnectionPool",
    "PostgresAuditWriter",
    "PostgresFormStore",
    "PostgresUserRoleStore",
    "PostgresWorkflowRouting",
    "QueryWriter",
    "RuleStore",
    "SchemaManager",
    "close_pool",
    "get_pool",
    "initialize_pool",
    "insert_audit_log",
    "query_audit_logs_by_entity",
]
