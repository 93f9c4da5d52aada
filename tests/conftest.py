"""
Pytest configuration for the ARN reconciler.

Provides fixtures for:
- Database connection management
- Throwaway source/results/runs tables per test
- Settings override for integration tests
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Generator

import psycopg
import pytest
from psycopg import sql
from psycopg_pool import ConnectionPool

from arn_reconciler.config import Settings


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "push_endpoints"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_pool(test_dsn: str, db_connection_available: bool) -> Generator[ConnectionPool, None, None]:
    """
    Session-scoped connection pool for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    pool = ConnectionPool(conninfo=test_dsn, min_size=1, max_size=4, open=True)
    try:
        yield pool
    finally:
        pool.close()


@dataclass(frozen=True)
class TableNames:
    source: str
    results: str
    runs: str


@pytest.fixture(scope="function")
def table_names(db_pool: ConnectionPool) -> Generator[TableNames, None, None]:
    """
    Unique table names for one test; the source table is created empty and all
    three tables are dropped afterwards.
    """
    suffix = uuid.uuid4().hex[:8]
    names = TableNames(
        source=f"test_endpoints_{suffix}",
        results=f"test_results_{suffix}",
        runs=f"test_runs_{suffix}",
    )
    with db_pool.connection() as conn:
        conn.execute(
            sql.SQL(
                "CREATE TABLE {table} (id BIGSERIAL PRIMARY KEY, arn VARCHAR(500), platform VARCHAR(20))"
            ).format(table=sql.Identifier(names.source))
        )
    yield names
    with db_pool.connection() as conn:
        for name in (names.source, names.results, names.runs):
            conn.execute(sql.SQL("DROP TABLE IF EXISTS {table}").format(table=sql.Identifier(name)))


@pytest.fixture(scope="function")
def seeded_source(db_pool: ConnectionPool, table_names: TableNames) -> int:
    """
    Seed ten endpoint rows (ids 1..10) plus one blank and one NULL ARN.

    Returns the number of rows with a usable ARN.
    """
    rows = [(f"arn:aws:sns:us-east-1:123456789012:endpoint/GCM/app/{i:04d}", "GCM") for i in range(1, 11)]
    with db_pool.connection() as conn:
        with conn.cursor() as cur:
            cur.executemany(
                sql.SQL("INSERT INTO {table} (arn, platform) VALUES (%s, %s)").format(
                    table=sql.Identifier(table_names.source)
                ),
                rows + [("", "GCM"), (None, "APNS")],
            )
    return len(rows)
