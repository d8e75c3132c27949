"""
Integration tests for the database connection pool and schema provisioning

Tests the PostgreSQL connection pool functionality using testcontainers.
"""
import pytest

from edc_validation.storage.connection import (
    DatabaseConnectionPool,
    close_pool,
    get_pool,
    initialize_pool,
)
from edc_validation.storage.schema_mgmt import OWNED_TABLES, SchemaManager


def make_pool(postgres_container, **kwargs) -> DatabaseConnectionPool:
    return DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_edc",
        user="test_edc",
        password="test_password",
        **kwargs,
    )


@pytest.mark.integration
def test_connection_pool_initialization(postgres_container):
    """Test that connection pool initializes correctly"""
    pool = make_pool(postgres_container, min_size=2, max_size=5)

    pool.open()

    assert pool._pool is not None
    assert pool._pool.min_size == 2
    assert pool._pool.max_size == 5

    pool.close()


@pytest.mark.integration
def test_get_connection(postgres_container):
    """Test getting a connection from the pool"""
    pool = make_pool(postgres_container)
    pool.open()

    with pool.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1 as test")
            result = cur.fetchone()
            assert result["test"] == 1

    pool.close()


@pytest.mark.integration
def test_execute_query(postgres_container):
    """Test executing a query using the pool"""
    pool = make_pool(postgres_container)
    pool.open()

    result = pool.execute_query("SELECT 42 as answer")
    assert len(result) == 1
    assert result[0]["answer"] == 42

    pool.close()


@pytest.mark.integration
def test_execute_command(clean_db):
    """Test executing INSERT/UPDATE commands"""
    rowcount = clean_db.execute_command(
        """
        INSERT INTO form_workflow_config (form_id, study_id, route_to_username)
        VALUES (%s, %s, %s)
        """,
        (10, 100, "router"),
    )

    assert rowcount == 1

    result = clean_db.execute_query(
        "SELECT route_to_username FROM form_workflow_config WHERE form_id = %s",
        (10,)
    )
    assert len(result) == 1
    assert result[0]["route_to_username"] == "router"


@pytest.mark.integration
def test_context_manager(postgres_container):
    """Test using pool as context manager"""
    with make_pool(postgres_container) as pool:
        result = pool.execute_query("SELECT 1 as test")
        assert result[0]["test"] == 1

    # Pool should be closed after context
    with pytest.raises(RuntimeError):
        pool.execute_query("SELECT 1")


@pytest.mark.integration
def test_transaction_rolls_back_on_error(clean_db):
    """Test that a failing transaction leaves nothing behind"""
    with pytest.raises(RuntimeError):
        with clean_db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("INSERT INTO form_workflow_config (form_id, route_to_user_id) VALUES (10, 3)")
            raise RuntimeError("abort")

    with clean_db.transaction() as conn:
        with conn.cursor() as cur:
            cur.execute("INSERT INTO form_workflow_config (form_id, route_to_user_id) VALUES (20, 4)")

    rows = clean_db.execute_query("SELECT form_id FROM form_workflow_config")
    assert [row["form_id"] for row in rows] == [20]


@pytest.mark.integration
def test_connections_report_application_name(clean_db):
    """Test that pooled connections identify themselves to the server"""
    rows = clean_db.execute_query("SELECT current_setting('application_name') AS name")
    assert rows[0]["name"] == "edc-validation"


@pytest.mark.integration
def test_global_pool_initialization(postgres_container):
    """Test global pool initialization and retrieval"""
    pool = initialize_pool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_edc",
        user="test_edc",
        password="test_password",
    )

    assert pool is not None
    assert get_pool() is pool

    close_pool()

    with pytest.raises(RuntimeError):
        get_pool()


@pytest.mark.integration
def test_schema_manager_is_idempotent(clean_db):
    """Test that provisioning twice leaves every owned table in place"""
    manager = SchemaManager(clean_db)
    assert not manager.ready

    manager.ensure_schema()
    manager.ensure_schema()

    assert manager.ready
    assert manager.existing_tables() == sorted(OWNED_TABLES)
