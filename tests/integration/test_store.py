"""
Integration tests for the PostgreSQL store and a full run against it.

These tests run against a real PostgreSQL instance and verify that:
1. Source records are read with keyset pagination, skipping blank ARNs
2. Outcome inserts are idempotent per (run_id, original_id)
3. Watermarks, run listings, statistics and progress are derived from the tables
4. A check run followed by a deletion run completes end to end

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import List, Optional

import pytest
from psycopg_pool import ConnectionPool

from arn_reconciler.domain.errors import EndpointNotFoundError
from arn_reconciler.domain.models import (
    EndpointAttributes,
    Grant,
    Outcome,
    OutcomeKind,
    Run,
    RunMode,
    RunState,
    SourceDescriptor,
)
from arn_reconciler.engine.credentials import CredentialManager
from arn_reconciler.engine.retry import RetryController
from arn_reconciler.infrastructure.store import PostgresStore
from arn_reconciler.orchestrator import ReconciliationOrchestrator

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
CHECK_RUN_ID = "run-20240501T120000Z-0a1b2c3d"

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
)


def _outcome(ordinal: int, kind: OutcomeKind = OutcomeKind.ENABLED, batch: int = 1) -> Outcome:
    return Outcome(
        run_id=CHECK_RUN_ID,
        batch_number=batch,
        ordinal=ordinal,
        arn=f"arn:aws:sns:us-east-1:123456789012:endpoint/GCM/app/{ordinal:04d}",
        kind=kind,
        reason="test",
        metadata={"retry_count": 0, "token": "abc..."},
        checked_at=NOW,
    )


@pytest.fixture
def source(table_names) -> SourceDescriptor:
    return SourceDescriptor(table=table_names.source, arn_column="arn", id_column="id")


@pytest.fixture
def store(db_pool: ConnectionPool, table_names) -> PostgresStore:
    store = PostgresStore(db_pool, table_names.results, table_names.runs)
    store.ensure_schema()
    return store


@pytest.fixture
def check_run(store: PostgresStore, source: SourceDescriptor) -> Run:
    run = Run(run_id=CHECK_RUN_ID, mode=RunMode.CHECK, started_at=NOW, source=source)
    store.create_run(run)
    return run


class TestPostgresStore:
    def test_ensure_schema_is_idempotent(self, store: PostgresStore) -> None:
        store.ensure_schema()

    def test_fetch_records_pages_and_skips_blank_arns(
        self, store: PostgresStore, source: SourceDescriptor, seeded_source: int
    ) -> None:
        first = store.fetch_records(source, None, 4)
        rest = store.fetch_records(source, first[-1].ordinal, 100)

        assert [r.ordinal for r in first] == [1, 2, 3, 4]
        assert [r.ordinal for r in rest] == list(range(5, seeded_source + 1))

    def test_append_outcomes_is_idempotent(self, store: PostgresStore, check_run: Run) -> None:
        batch = [_outcome(1), _outcome(2)]

        store.append_outcomes(batch)
        store.append_outcomes(batch)

        info = store.get_watermark(CHECK_RUN_ID)
        assert info.outcome_count == 2
        assert info.max_ordinal == 2
        assert info.max_batch == 1

    def test_run_round_trip_and_exhaustion(self, store: PostgresStore, check_run: Run) -> None:
        store.mark_run_exhausted(CHECK_RUN_ID, NOW)

        run = store.get_run(CHECK_RUN_ID)

        assert run is not None
        assert run.source == check_run.source
        assert run.exhausted_at == NOW
        assert store.get_run("run-20240501T120000Z-ffffffff") is None

    def test_deletion_candidates_are_disabled_outcomes(self, store: PostgresStore, check_run: Run) -> None:
        store.append_outcomes(
            [
                _outcome(1, OutcomeKind.DISABLED),
                _outcome(2),
                _outcome(3, OutcomeKind.DISABLED),
                _outcome(4, OutcomeKind.NOT_FOUND),
            ]
        )

        assert [r.ordinal for r in store.fetch_deletion_candidates(CHECK_RUN_ID, None, 10)] == [1, 3]
        assert [r.ordinal for r in store.fetch_deletion_candidates(CHECK_RUN_ID, 1, 10)] == [3]

    def test_listing_stats_and_progress(
        self, store: PostgresStore, source: SourceDescriptor, check_run: Run, seeded_source: int
    ) -> None:
        store.append_outcomes([_outcome(1), _outcome(2, OutcomeKind.DISABLED), _outcome(3, batch=2)])

        (listing,) = store.list_runs()
        stats = store.get_stats(CHECK_RUN_ID)
        progress = store.get_progress(source)

        assert listing.processed_records == 3
        assert listing.counts == {"ENABLED": 2, "DISABLED": 1}
        assert stats["total_batches"] == 2
        assert stats["counts"]["DISABLED"] == 1
        assert progress["run_id"] == CHECK_RUN_ID
        assert progress["total_source_records"] == seeded_source
        assert progress["remaining_records"] == seeded_source - 3
        assert progress["progress_percent"] == 30.0


class _FakeService:
    def __init__(self) -> None:
        self.deleted: List[str] = []

    def check_status(self, arn: str, grant: Grant) -> Optional[EndpointAttributes]:
        ordinal = int(arn.rsplit("/", 1)[1])
        if ordinal == 7:
            raise EndpointNotFoundError("Endpoint does not exist", code="NotFound")
        return EndpointAttributes(enabled=ordinal % 4 != 0, token="token")

    def delete_endpoint(self, arn: str, grant: Grant) -> None:
        self.deleted.append(arn)


class _FakeBroker:
    def acquire(self) -> Grant:
        return Grant()


def test_check_then_delete_end_to_end(store: PostgresStore, source: SourceDescriptor, seeded_source: int) -> None:
    service = _FakeService()
    orchestrator = ReconciliationOrchestrator(
        store=store,
        controller=RetryController(CredentialManager(_FakeBroker()), sleep=lambda _: None),
        service=service,
        batch_size=2,
        chunk_size=4,
        sleep=lambda _: None,
    )

    check = orchestrator.run(source)
    deletion = orchestrator.delete(check.run_id)

    assert check.total_processed == seeded_source
    assert check.state is RunState.EXHAUSTED
    assert check.counts == {"ENABLED": 7, "DISABLED": 2, "NOT_FOUND": 1}
    assert deletion.counts == {"DELETED": 2}
    assert len(service.deleted) == 2
    assert store.get_watermark(check.run_id).max_ordinal == seeded_source


def test_generated_inventory_loads_via_copy(test_dsn: str, db_pool: ConnectionPool, table_names, tmp_path) -> None:
    from scripts.generate_data import _copy_into_db, _generate_rows_csv

    table = f"{table_names.source}_generated"
    csv_path = tmp_path / "endpoints.csv"
    _generate_rows_csv(csv_path, rows=30, batch_size=8, seed=42)
    try:
        copied = _copy_into_db(test_dsn, csv_path, table=table)
        store_source = SourceDescriptor(table=table, arn_column="arn", id_column="id")
        store = PostgresStore(db_pool, table_names.results, table_names.runs)

        assert copied == 30
        assert 0 < len(store.fetch_records(store_source, None, 100)) <= 30
    finally:
        with db_pool.connection() as conn:
            conn.execute(f'DROP TABLE IF EXISTS "{table}"')
