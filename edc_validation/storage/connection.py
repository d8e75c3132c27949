"""
PostgreSQL connection pool shared by the storage adapters

The rule store, the form and user stores, the audit writer and the query
writer all borrow connections from one DatabaseConnectionPool. Rows come
back as dictionaries. Connections carry an application_name so validation
traffic can be told apart in pg_stat_activity, and an optional statement
timeout bounds how long a query writer waits behind another writer's lock.
"""
import os
import time
from contextlib import contextmanager
from typing import Iterator

import psycopg
from psycopg import OperationalError
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ..observability.logger import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "edc-validation"


class DatabaseConnectionPool:
    """
    Pooled psycopg3 connections to the EDC database

    Example:
        with DatabaseConnectionPool(host="db", password="secret") as pool:
            rows = pool.execute_query("SELECT rule_id, name FROM validation_rule")
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 30.0,
        statement_timeout_ms: int | None = None,
        application_name: str = APPLICATION_NAME,
    ) -> None:
        """
        Args:
            host: Database host (defaults to env var DB_HOST)
            port: Database port (defaults to env var DB_PORT)
            database: Database name (defaults to env var DB_NAME)
            user: Database user (defaults to env var DB_USER)
            password: Database password (defaults to env var DB_PASSWORD)
            min_size: Minimum pool size
            max_size: Maximum pool size
            timeout: Connect and checkout timeout in seconds
            statement_timeout_ms: Server-side statement timeout (defaults to
                env var DB_STATEMENT_TIMEOUT_MS; unset means no limit)
            application_name: Reported to the server for every connection
        """
        self.host = host or os.getenv("DB_HOST", "localhost")
        self.port = port or int(os.getenv("DB_PORT", "5432"))
        self.database = database or os.getenv("DB_NAME", "edc")
        self.user = user or os.getenv("DB_USER", "edc")
        self.password = password or os.getenv("DB_PASSWORD")

        if not self.password:
            raise ValueError(
                "Database password must be provided. "
                "Set DB_PASSWORD environment variable or pass to constructor."
            )

        if statement_timeout_ms is None and os.getenv("DB_STATEMENT_TIMEOUT_MS"):
            statement_timeout_ms = int(os.environ["DB_STATEMENT_TIMEOUT_MS"])
        if statement_timeout_ms is not None and statement_timeout_ms <= 0:
            raise ValueError(f"statement_timeout_ms must be positive, got {statement_timeout_ms}")

        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.statement_timeout_ms = statement_timeout_ms

        options = {}
        if statement_timeout_ms is not None:
            options["options"] = f"-c statement_timeout={statement_timeout_ms}"
        self.conninfo = make_conninfo(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=self.password,
            connect_timeout=int(self.timeout),
            application_name=application_name,
            **options,
        )

        self._pool: ConnectionPool | None = None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the pool, retrying while the database is still starting.

        Raises:
            OperationalError: If connection fails after all retries
        """
        if self._pool is not None:
            return

        self._pool = ConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={"row_factory": dict_row},
            open=False,
        )

        for attempt in range(1, max_retries + 1):
            try:
                self._pool.open(wait=True, timeout=self.timeout)
                logger.info(
                    "Database pool open",
                    extra={"host": self.host, "database": self.database, "max_size": self.max_size},
                )
                return
            except OperationalError as e:
                if attempt < max_retries:
                    logger.warning(
                        f"Database not reachable, retrying ({attempt}/{max_retries})",
                        extra={"host": self.host, "error_message": str(e)},
                    )
                    time.sleep(retry_delay)
                else:
                    self._pool = None
                    raise OperationalError(
                        f"Failed to connect to database after {max_retries} attempts: {e}"
                    ) from e

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def get_connection(self) -> Iterator[psycopg.Connection]:
        """
        Borrow a connection from the pool

        Callers commit explicitly. A block that raises is rolled back when
        the connection goes back to the pool.

        Raises:
            RuntimeError: If pool is not open
        """
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")

        with self._pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[psycopg.Connection]:
        """
        Run a block as one transaction: commit on success, roll back on any error.
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def execute_query(self, query: str, params: tuple | dict | None = None) -> list[dict]:
        """Run a query and return its rows (SELECT, or a write with RETURNING)."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def execute_command(self, command: str, params: tuple | dict | None = None) -> int:
        """Run an INSERT/UPDATE/DELETE in its own transaction and return the row count."""
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(command, params)
                return cur.rowcount

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Process-wide pool for the CLI and embedding applications
_global_pool: DatabaseConnectionPool | None = None


def get_pool() -> DatabaseConnectionPool:
    """
    Raises:
        RuntimeError: If initialize_pool() has not been called
    """
    if _global_pool is None:
        raise RuntimeError(
            "Database pool not initialized. Call initialize_pool() first."
        )
    return _global_pool


def initialize_pool(**kwargs) -> DatabaseConnectionPool:
    """Open the process-wide pool, replacing any previous one."""
    global _global_pool
    if _global_pool is not None:
        _global_pool.close()

    _global_pool = DatabaseConnectionPool(**kwargs)
    _global_pool.open()
    return _global_pool


def close_pool() -> None:
    global _global_pool
    if _global_pool is not None:
        _global_pool.close()
        _global_pool = None
