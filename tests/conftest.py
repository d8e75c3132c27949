"""
Pytest configuration and fixtures for edc-validation tests

This module provides shared fixtures for unit and integration tests.
Integration tests run against a throwaway PostgreSQL container and are
skipped when Docker is not available.
"""
import os
from typing import Generator

import psycopg
import pytest

from edc_validation.storage.connection import DatabaseConnectionPool
from edc_validation.storage.schema_mgmt import OWNED_TABLES, SchemaManager

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")

PG_USER = "test_edc"
PG_PASSWORD = "test_password"
PG_DB = "test_edc"

PLATFORM_TABLES = (
    "item_data",
    "form_instance",
    "form_item",
    "form_version",
    "form",
    "study_user_role",
    "organization_member",
    "user_account",
)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )


def read_fixture(name: str) -> str:
    with open(os.path.join(FIXTURES_DIR, name)) as f:
        return f.read()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container():
    """
    Start PostgreSQL container with the platform tables

    Yields:
        PostgresContainer instance
    """
    try:
        from testcontainers.postgres import PostgresContainer

        container = PostgresContainer(
            image="postgres:16.2-alpine",
            username=PG_USER,
            password=PG_PASSWORD,
            dbname=PG_DB,
        )
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for integration tests: {e}")

    try:
        conninfo = (
            f"host={container.get_container_host_ip()} "
            f"port={container.get_exposed_port(5432)} "
            f"dbname={PG_DB} user={PG_USER} password={PG_PASSWORD}"
        )
        with psycopg.connect(conninfo) as conn:
            with conn.cursor() as cur:
                cur.execute(read_fixture("clinical_schema.sql"))
            conn.commit()

        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def db_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Connection pool against the test container

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database=PG_DB,
        user=PG_USER,
        password=PG_PASSWORD,
        min_size=2,
        max_size=12,
    )
    pool.open()
    SchemaManager(pool).ensure_schema()
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def clean_db(db_pool) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Truncate every table and load the seed study before each test

    Yields:
        DatabaseConnectionPool over a freshly seeded database
    """
    tables = ", ".join(OWNED_TABLES + PLATFORM_TABLES)
    with db_pool.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"TRUNCATE TABLE {tables} RESTART IDENTITY CASCADE")
            cur.execute(read_fixture("clinical_seed.sql"))
        conn.commit()

    yield db_pool


# =======================
# FILE FIXTURES
# =======================

@pytest.fixture(scope="session")
def test_data_dir() -> str:
    """
    Get path to test data fixtures directory

    Returns:
        Path to tests/fixtures directory
    """
    return FIXTURES_DIR
