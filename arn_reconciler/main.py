from __future__ import annotations

import signal
import sys
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
import typer
from pydantic import ValidationError

from arn_reconciler.config import Settings, get_settings
from arn_reconciler.domain.errors import ReconcilerError
from arn_reconciler.domain.models import SourceDescriptor
from arn_reconciler.infrastructure.db_factory import get_sync_pool
from arn_reconciler.infrastructure.store import PostgresStore
from arn_reconciler.orchestrator import build_orchestrator
from arn_reconciler.reporter import print_progress, print_runs, print_stats, print_summary
from arn_reconciler.utils.logging import configure_logging, get_logger

app = typer.Typer(help="Resumable SNS platform-endpoint reconciliation CLI.")
log = get_logger(__name__)


def _bootstrap() -> Settings:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    return settings


def _open_store(settings: Settings) -> PostgresStore:
    pool = get_sync_pool(min_size=1, max_size=4)
    store = PostgresStore(pool, settings.results_table_name, settings.runs_table_name)
    store.ensure_schema()
    return store


@contextmanager
def _fatal_errors() -> Iterator[None]:
    """Turn reconciler, database and input validation failures into exit code 1."""
    try:
        yield
    except (ReconcilerError, psycopg.Error, ValidationError) as exc:
        log.error(f"[FATAL] {exc}", extra={"error_type": type(exc).__name__})
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    """
    While active, SIGINT/SIGTERM request a stop at the next batch boundary.
    """

    def _handler(signum: int, _frame: object) -> None:
        log.warning(
            f"[SIGNAL] {signal.Signals(signum).name} received; finishing current batch",
            extra={"signal": signum},
        )
        stop_event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"ENV={settings.app_env} | "
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"AWS region={settings.aws_region} role={settings.aws_role_arn or '-'}"
    )
    typer.echo(
        f"source={settings.source_table_name}({settings.source_id_column}, {settings.source_arn_column}) | "
        f"results={settings.results_table_name} runs={settings.runs_table_name}"
    )
    typer.echo(
        f"batch={settings.batch_size} chunk={settings.chunk_size} "
        f"concurrency={settings.max_concurrency} retries={settings.max_retries} "
        f"retry_delay={settings.retry_delay_ms}ms refreshes={settings.max_credential_refreshes}"
    )


@app.command()
def run(
    table: Optional[str] = typer.Option(None, "--table", "-t", help="Source table (default from settings)."),
    arn_column: Optional[str] = typer.Option(None, "--arn-column", help="Column holding endpoint ARNs."),
    id_column: Optional[str] = typer.Option(None, "--id-column", help="Monotonic id column."),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", min=1, help="Records per batch."),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", "-c", min=1, help="Records per fetch."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Stop after this many records."),
    resume_run_id: Optional[str] = typer.Option(
        None, "--resume-run-id", help="Continue an interrupted check run."
    ),
    resume_from_id: Optional[int] = typer.Option(
        None, "--resume-from-id", help="Start a new run after this source id."
    ),
) -> None:
    """
    Check the status of every endpoint in the source table.
    """
    settings = _bootstrap()
    stop_event = threading.Event()

    with _fatal_errors():
        source = SourceDescriptor(
            table=table or settings.source_table_name,
            arn_column=arn_column or settings.source_arn_column,
            id_column=id_column or settings.source_id_column,
        )
        store = _open_store(settings)
        orchestrator = build_orchestrator(
            settings, store, stop_event, batch_size=batch_size, chunk_size=chunk_size
        )
        with _stop_on_signals(stop_event):
            summary = orchestrator.run(
                source,
                limit=limit,
                resume_run_id=resume_run_id,
                resume_from_id=resume_from_id,
            )

    print_summary(summary)


@app.command()
def delete(
    run_id: Optional[str] = typer.Option(
        None, "--run-id", "-r", help="Check run whose DISABLED endpoints should be deleted."
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", min=1, help="Records per batch."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Stop after this many records."),
    resume_run_id: Optional[str] = typer.Option(
        None, "--resume-run-id", help="Continue an interrupted deletion run."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Record what would be deleted without deleting."),
) -> None:
    """
    Delete the endpoints a check run found DISABLED.
    """
    if not run_id and not resume_run_id:
        raise typer.BadParameter("either --run-id or --resume-run-id is required")
    if run_id and resume_run_id:
        raise typer.BadParameter("--run-id and --resume-run-id are mutually exclusive")

    settings = _bootstrap()
    stop_event = threading.Event()

    with _fatal_errors():
        store = _open_store(settings)
        orchestrator = build_orchestrator(settings, store, stop_event, batch_size=batch_size)
        with _stop_on_signals(stop_event):
            summary = orchestrator.delete(
                run_id, limit=limit, resume_run_id=resume_run_id, dry_run=dry_run
            )

    print_summary(summary)


@app.command()
def progress(
    run_id: Optional[str] = typer.Option(None, "--run-id", "-r", help="Run to inspect (default: latest)."),
) -> None:
    """
    Show how far a check run has progressed through the source table.
    """
    settings = _bootstrap()
    with _fatal_errors():
        store = _open_store(settings)
        source = SourceDescriptor(
            table=settings.source_table_name,
            arn_column=settings.source_arn_column,
            id_column=settings.source_id_column,
        )
        data = store.get_progress(source, run_id=run_id)
    print_progress(data)


@app.command()
def stats(
    run_id: Optional[str] = typer.Option(None, "--run-id", "-r", help="Restrict to one run."),
) -> None:
    """
    Show outcome counts per status.
    """
    settings = _bootstrap()
    with _fatal_errors():
        data = _open_store(settings).get_stats(run_id=run_id)
    print_stats(data)


@app.command()
def runs() -> None:
    """
    List recorded runs, most recent first.
    """
    settings = _bootstrap()
    with _fatal_errors():
        listing = _open_store(settings).list_runs()
    print_runs(listing)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
