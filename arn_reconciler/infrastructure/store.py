"""
PostgreSQL store for source records, run metadata, and outcomes.

The engine talks to the store through the ReconciliationStore protocol; the
Postgres implementation below uses a psycopg pool and keyset pagination.

Tables (names configurable):
- runs:     one row per run (mode, source descriptor, parent run, exhausted_at)
- results:  one row per (run_id, original_id); inserts are idempotent
            (`ON CONFLICT DO NOTHING`), so a batch can be retried wholesale.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from arn_reconciler.domain.errors import ConfigurationError, PersistenceError
from arn_reconciler.domain.models import (
    SQL_IDENTIFIER,
    Outcome,
    OutcomeKind,
    Record,
    Run,
    RunListing,
    RunMode,
    SourceDescriptor,
    WatermarkInfo,
)
from arn_reconciler.utils.logging import get_logger

log = get_logger(__name__)


@runtime_checkable
class ReconciliationStore(Protocol):
    """
    Persistence operations the engine depends on.
    """

    def fetch_records(
        self, source: SourceDescriptor, after_id: Optional[int], limit: int
    ) -> List[Record]:
        ...

    def fetch_deletion_candidates(
        self, check_run_id: str, after_id: Optional[int], limit: int
    ) -> List[Record]:
        ...

    def append_outcomes(self, outcomes: Sequence[Outcome]) -> None:
        ...

    def create_run(self, run: Run) -> None:
        ...

    def get_run(self, run_id: str) -> Optional[Run]:
        ...

    def mark_run_exhausted(self, run_id: str, at: datetime) -> None:
        ...

    def get_watermark(self, run_id: str) -> WatermarkInfo:
        ...

    def list_runs(self) -> List[RunListing]:
        ...


def _identifier(name: str) -> sql.Identifier:
    """Quote a possibly schema-qualified table or column name."""
    if not SQL_IDENTIFIER.match(name):
        raise ConfigurationError(f"not a valid SQL identifier: {name!r}")
    return sql.Identifier(*name.split("."))


def _index_name(table: str, suffix: str) -> sql.Identifier:
    return sql.Identifier(f"ix_{table.replace('.', '_')}_{suffix}")


class PostgresStore:
    """
    ReconciliationStore backed by PostgreSQL via a psycopg ConnectionPool.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        results_table: str,
        runs_table: str,
    ) -> None:
        self._pool = pool
        self._results_name = results_table
        self._runs_name = runs_table
        self._results = _identifier(results_table)
        self._runs = _identifier(runs_table)

    # ------------------------------------------------------------------ schema

    def ensure_schema(self) -> None:
        """Create the runs and results tables (and indexes) if they do not exist."""
        statements = [
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {runs} (
                    run_id TEXT PRIMARY KEY,
                    mode TEXT NOT NULL,
                    parent_run_id TEXT,
                    source_table TEXT,
                    arn_column TEXT,
                    id_column TEXT,
                    started_at TIMESTAMPTZ NOT NULL,
                    exhausted_at TIMESTAMPTZ
                )
                """
            ).format(runs=self._runs),
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {results} (
                    id BIGSERIAL PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    batch_id INTEGER NOT NULL,
                    original_id BIGINT NOT NULL,
                    arn VARCHAR(500) NOT NULL,
                    status VARCHAR(50) NOT NULL,
                    status_reason VARCHAR(200),
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    metadata JSONB,
                    checked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (run_id, original_id)
                )
                """
            ).format(results=self._results),
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS {name} ON {results} (run_id, status, original_id)"
            ).format(name=_index_name(self._results_name, "run_status"), results=self._results),
            sql.SQL("CREATE INDEX IF NOT EXISTS {name} ON {results} (checked_at)").format(
                name=_index_name(self._results_name, "checked_at"), results=self._results
            ),
            sql.SQL("CREATE INDEX IF NOT EXISTS {name} ON {results} (arn)").format(
                name=_index_name(self._results_name, "arn"), results=self._results
            ),
        ]
        with self._pool.connection() as conn:
            with conn.transaction():
                for statement in statements:
                    conn.execute(statement)
        log.info(
            "Results tables ready",
            extra={"results_table": self._results_name, "runs_table": self._runs_name},
        )

    # ------------------------------------------------------------------ reads

    def fetch_records(
        self, source: SourceDescriptor, after_id: Optional[int], limit: int
    ) -> List[Record]:
        """
        Return up to `limit` source rows with id > after_id, ascending, skipping blank ARNs.
        """
        id_col = _identifier(source.id_column)
        arn_col = _identifier(source.arn_column)
        conditions = [sql.SQL("{arn} IS NOT NULL AND {arn} <> ''").format(arn=arn_col)]
        params: List[Any] = []
        if after_id is not None:
            conditions.append(sql.SQL("{id} > %s").format(id=id_col))
            params.append(after_id)
        query = sql.SQL("SELECT {id}, {arn} FROM {table} WHERE {where} ORDER BY {id} LIMIT %s").format(
            id=id_col,
            arn=arn_col,
            table=_identifier(source.table),
            where=sql.SQL(" AND ").join(conditions),
        )
        params.append(limit)
        with self._pool.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Record(ordinal=row[0], arn=row[1]) for row in rows]

    def fetch_deletion_candidates(
        self, check_run_id: str, after_id: Optional[int], limit: int
    ) -> List[Record]:
        """
        Return DISABLED outcomes of a check run with original_id > after_id, ascending.
        """
        conditions = [sql.SQL("run_id = %s"), sql.SQL("status = %s")]
        params: List[Any] = [check_run_id, OutcomeKind.DISABLED.value]
        if after_id is not None:
            conditions.append(sql.SQL("original_id > %s"))
            params.append(after_id)
        query = sql.SQL(
            "SELECT original_id, arn FROM {results} WHERE {where} ORDER BY original_id LIMIT %s"
        ).format(results=self._results, where=sql.SQL(" AND ").join(conditions))
        params.append(limit)
        with self._pool.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Record(ordinal=row[0], arn=row[1]) for row in rows]

    def get_run(self, run_id: str) -> Optional[Run]:
        query = sql.SQL(
            """
            SELECT run_id, mode, parent_run_id, source_table, arn_column, id_column,
                   started_at, exhausted_at
            FROM {runs} WHERE run_id = %s
            """
        ).format(runs=self._runs)
        with self._pool.connection() as conn:
            row = conn.execute(query, (run_id,)).fetchone()
        if row is None:
            return None
        source = None
        if row[3]:
            source = SourceDescriptor(table=row[3], arn_column=row[4], id_column=row[5])
        return Run(
            run_id=row[0],
            mode=RunMode(row[1]),
            parent_run_id=row[2],
            source=source,
            started_at=row[6],
            exhausted_at=row[7],
        )

    def get_watermark(self, run_id: str) -> WatermarkInfo:
        query = sql.SQL(
            "SELECT MAX(original_id), COUNT(*), COALESCE(MAX(batch_id), 0) FROM {results} WHERE run_id = %s"
        ).format(results=self._results)
        with self._pool.connection() as conn:
            max_ordinal, count, max_batch = conn.execute(query, (run_id,)).fetchone()
        return WatermarkInfo(max_ordinal=max_ordinal, outcome_count=count, max_batch=max_batch)

    def list_runs(self) -> List[RunListing]:
        runs_query = sql.SQL(
            """
            SELECT r.run_id, r.mode, r.started_at, r.exhausted_at,
                   COUNT(o.id), MIN(o.original_id), MAX(o.original_id), MAX(o.checked_at)
            FROM {runs} r
            LEFT JOIN {results} o ON o.run_id = r.run_id
            GROUP BY r.run_id, r.mode, r.started_at, r.exhausted_at
            ORDER BY r.started_at DESC
            """
        ).format(runs=self._runs, results=self._results)
        counts_query = sql.SQL(
            "SELECT run_id, status, COUNT(*) FROM {results} GROUP BY run_id, status"
        ).format(results=self._results)

        with self._pool.connection() as conn:
            run_rows = conn.execute(runs_query).fetchall()
            count_rows = conn.execute(counts_query).fetchall()

        counts: Dict[str, Dict[str, int]] = defaultdict(dict)
        for run_id, status, count in count_rows:
            counts[run_id][status] = count

        return [
            RunListing(
                run_id=row[0],
                mode=RunMode(row[1]),
                started_at=row[2],
                exhausted=row[3] is not None,
                processed_records=row[4],
                first_ordinal=row[5],
                last_ordinal=row[6],
                last_activity=row[7],
                counts=counts.get(row[0], {}),
            )
            for row in run_rows
        ]

    def get_stats(self, run_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate statistics over all outcomes, or those of one run.
        """
        where = sql.SQL("WHERE run_id = %s") if run_id else sql.SQL("")
        params = (run_id,) if run_id else ()
        totals_query = sql.SQL(
            """
            SELECT COUNT(*), MIN(original_id), MAX(original_id),
                   MIN(checked_at), MAX(checked_at),
                   COUNT(DISTINCT run_id), COUNT(DISTINCT (run_id, batch_id))
            FROM {results} {where}
            """
        ).format(results=self._results, where=where)
        status_query = sql.SQL(
            "SELECT status, COUNT(*) FROM {results} {where} GROUP BY status ORDER BY status"
        ).format(results=self._results, where=where)

        with self._pool.connection() as conn:
            totals = conn.execute(totals_query, params).fetchone()
            statuses = conn.execute(status_query, params).fetchall()

        return {
            "run_id": run_id,
            "total_records": totals[0],
            "first_processed_id": totals[1],
            "last_processed_id": totals[2],
            "first_processed_at": totals[3],
            "last_processed_at": totals[4],
            "total_runs": totals[5],
            "total_batches": totals[6],
            "counts": {status: count for status, count in statuses},
        }

    def get_progress(self, source: SourceDescriptor, run_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Progress of a check run (the latest one if `run_id` is omitted) over its source.
        """
        latest_query = sql.SQL(
            "SELECT run_id FROM {runs} WHERE mode = %s ORDER BY started_at DESC LIMIT 1"
        ).format(runs=self._runs)
        total_runs_query = sql.SQL("SELECT COUNT(*) FROM {runs}").format(runs=self._runs)

        with self._pool.connection() as conn:
            if run_id is None:
                row = conn.execute(latest_query, (RunMode.CHECK.value,)).fetchone()
                run_id = row[0] if row else None
            total_runs = conn.execute(total_runs_query).fetchone()[0]

        if run_id is None:
            return {
                "run_id": None,
                "total_source_records": 0,
                "processed_records": 0,
                "last_processed_id": None,
                "remaining_records": 0,
                "progress_percent": 0.0,
                "total_runs": total_runs,
                "exhausted": False,
            }

        run = self.get_run(run_id)
        if run is not None and run.source is not None:
            source = run.source
        info = self.get_watermark(run_id)

        id_col = _identifier(source.id_column)
        arn_col = _identifier(source.arn_column)
        table = _identifier(source.table)
        total_query = sql.SQL(
            "SELECT COUNT(*) FROM {table} WHERE {arn} IS NOT NULL AND {arn} <> ''"
        ).format(table=table, arn=arn_col)
        remaining_query = sql.SQL(
            "SELECT COUNT(*) FROM {table} WHERE {arn} IS NOT NULL AND {arn} <> '' AND {id} > %s"
        ).format(table=table, arn=arn_col, id=id_col)

        with self._pool.connection() as conn:
            total = conn.execute(total_query).fetchone()[0]
            if info.max_ordinal is None:
                remaining = total
            else:
                remaining = conn.execute(remaining_query, (info.max_ordinal,)).fetchone()[0]

        percent = round(info.outcome_count / total * 100, 2) if total else 0.0
        return {
            "run_id": run_id,
            "total_source_records": total,
            "processed_records": info.outcome_count,
            "last_processed_id": info.max_ordinal,
            "remaining_records": remaining,
            "progress_percent": percent,
            "total_runs": total_runs,
            "exhausted": bool(run and run.exhausted_at),
        }

    # ------------------------------------------------------------------ writes

    def create_run(self, run: Run) -> None:
        query = sql.SQL(
            """
            INSERT INTO {runs}
                (run_id, mode, parent_run_id, source_table, arn_column, id_column, started_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """
        ).format(runs=self._runs)
        source = run.source
        params = (
            run.run_id,
            run.mode.value,
            run.parent_run_id,
            source.table if source else None,
            source.arn_column if source else None,
            source.id_column if source else None,
            run.started_at,
        )
        try:
            with self._pool.connection() as conn:
                conn.execute(query, params)
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to register run {run.run_id}: {exc}") from exc

    def mark_run_exhausted(self, run_id: str, at: datetime) -> None:
        query = sql.SQL("UPDATE {runs} SET exhausted_at = %s WHERE run_id = %s").format(
            runs=self._runs
        )
        try:
            with self._pool.connection() as conn:
                conn.execute(query, (at, run_id))
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to mark run {run_id} exhausted: {exc}") from exc

    def append_outcomes(self, outcomes: Sequence[Outcome]) -> None:
        """
        Insert one batch of outcomes in a single transaction.

        Rows already present for (run_id, original_id) are skipped, so retrying a
        batch that was partially or fully committed is safe.
        """
        if not outcomes:
            return
        query = sql.SQL(
            """
            INSERT INTO {results}
                (run_id, batch_id, original_id, arn, status, status_reason,
                 error_message, retry_count, metadata, checked_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (run_id, original_id) DO NOTHING
            """
        ).format(results=self._results)
        rows = [
            (
                o.run_id,
                o.batch_number,
                o.ordinal,
                o.arn,
                o.kind.value,
                o.reason,
                o.error_message,
                o.retry_count,
                Jsonb(o.metadata),
                o.checked_at,
            )
            for o in outcomes
        ]
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.executemany(query, rows)
        except psycopg.Error as exc:
            raise PersistenceError(
                f"Failed to save batch of {len(outcomes)} outcomes: {exc}"
            ) from exc

    def close(self) -> None:
        self._pool.close()


__all__ = ["PostgresStore", "ReconciliationStore"]
