from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from arn_reconciler.domain.models import CHECK_KINDS, DELETE_KINDS, RunListing, RunMode, RunSummary

_KIND_STYLES = {
    "ENABLED": "green",
    "DISABLED": "yellow",
    "NOT_FOUND": "magenta",
    "INVALID": "red",
    "ERROR": "bold red",
    "DELETED": "green",
    "ALREADY_DELETED": "cyan",
    "DRY_RUN": "blue",
}


def _fmt_int(value: Optional[int]) -> str:
    return "-" if value is None else f"{value:,}"


def _fmt_time(value: Any) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S") if hasattr(value, "strftime") else str(value)


def _percent(part: int, total: int) -> str:
    return f"{part / total * 100:.1f}%" if total else "0.0%"


def print_summary(summary: RunSummary, console: Optional[Console] = None) -> None:
    """
    Render the final report of a run: counts per outcome kind plus loop statistics.
    """
    console = console or Console()
    kinds = CHECK_KINDS if summary.mode is RunMode.CHECK else DELETE_KINDS

    title = f"{summary.mode.value.title()} run {summary.run_id}"
    if summary.stopped:
        title = f"{title}\n[yellow]Stopped before completion; resume with --resume-run-id[/yellow]"

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Outcome", style="cyan", no_wrap=True)
    table.add_column("Records", justify="right", style="magenta")
    table.add_column("Share", justify="right")

    for kind in kinds:
        count = summary.counts.get(kind.value, 0)
        style = _KIND_STYLES.get(kind.value, "")
        table.add_row(f"[{style}]{kind.value}[/{style}]", _fmt_int(count), _percent(count, summary.total_processed))

    table.add_section()
    table.add_row("[bold]Total[/bold]", f"[bold]{summary.total_processed:,}[/bold]", "")
    console.print(table)

    rate = summary.total_processed / summary.elapsed_seconds if summary.elapsed_seconds else 0.0
    console.print(
        f"State: [bold]{summary.state.value}[/bold] │ "
        f"Batches: {summary.batches:,} │ Chunks: {summary.chunks:,} │ "
        f"Watermark: {_fmt_int(summary.final_watermark)} │ "
        f"Elapsed: {summary.elapsed_seconds:.1f}s ({rate:,.1f} records/s)"
    )


def print_runs(runs: List[RunListing], console: Optional[Console] = None) -> None:
    console = console or Console()
    if not runs:
        console.print("[yellow]No runs recorded.[/yellow]")
        return

    table = Table(title="Reconciliation Runs", box=box.ROUNDED, caption="Most recent first")
    table.add_column("Run ID", style="cyan", no_wrap=True)
    table.add_column("Mode")
    table.add_column("Started", style="dim")
    table.add_column("Last Activity", style="dim")
    table.add_column("Records", justify="right", style="magenta")
    table.add_column("Ordinals", justify="right")
    table.add_column("Outcomes")
    table.add_column("Complete", justify="center")

    for run in runs:
        outcomes = ", ".join(f"{kind}={count:,}" for kind, count in sorted(run.counts.items()))
        table.add_row(
            run.run_id,
            run.mode.value,
            _fmt_time(run.started_at),
            _fmt_time(run.last_activity),
            _fmt_int(run.processed_records),
            f"{_fmt_int(run.first_ordinal)} → {_fmt_int(run.last_ordinal)}",
            outcomes or "-",
            "[green]yes[/green]" if run.exhausted else "no",
        )
    console.print(table)


def print_progress(progress: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    if progress.get("run_id") is None:
        console.print("[yellow]No check runs found.[/yellow]")
        return

    table = Table(title=f"Progress of {progress['run_id']}", box=box.ROUNDED, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="magenta")
    table.add_row("Source records", _fmt_int(progress["total_source_records"]))
    table.add_row("Processed", _fmt_int(progress["processed_records"]))
    table.add_row("Remaining", _fmt_int(progress["remaining_records"]))
    table.add_row("Last processed id", _fmt_int(progress["last_processed_id"]))
    table.add_row("Progress", f"{progress['progress_percent']:.2f}%")
    table.add_row("Complete", "yes" if progress.get("exhausted") else "no")
    table.add_row("Runs recorded", _fmt_int(progress.get("total_runs")))
    console.print(table)


def print_stats(stats: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    scope = stats.get("run_id") or "all runs"
    total = stats.get("total_records", 0)

    table = Table(title=f"Outcome statistics ({scope})", box=box.ROUNDED)
    table.add_column("Status", style="cyan", no_wrap=True)
    table.add_column("Records", justify="right", style="magenta")
    table.add_column("Share", justify="right")
    for status, count in stats.get("counts", {}).items():
        style = _KIND_STYLES.get(status, "")
        label = f"[{style}]{status}[/{style}]" if style else status
        table.add_row(label, _fmt_int(count), _percent(count, total))
    table.add_section()
    table.add_row("[bold]Total[/bold]", f"[bold]{total:,}[/bold]", "")
    console.print(table)

    console.print(
        f"Ordinals: {_fmt_int(stats.get('first_processed_id'))} → "
        f"{_fmt_int(stats.get('last_processed_id'))} │ "
        f"From {_fmt_time(stats.get('first_processed_at'))} to "
        f"{_fmt_time(stats.get('last_processed_at'))} │ "
        f"Runs: {_fmt_int(stats.get('total_runs'))} │ Batches: {_fmt_int(stats.get('total_batches'))}"
    )


__all__ = ["print_progress", "print_runs", "print_stats", "print_summary"]
