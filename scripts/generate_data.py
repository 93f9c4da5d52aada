"""
Synthetic endpoint inventory for local runs of the ARN reconciler.

Generates deterministic pseudo-random push-notification rows (mostly well-formed
SNS endpoint ARNs, plus a sprinkling of blank and malformed ones), writes them as
CSV, and loads them into the source table with Postgres COPY.
"""

from __future__ import annotations

import csv
import random
import sys
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psycopg
import typer
from psycopg import sql

from arn_reconciler.config import get_settings
from arn_reconciler.infrastructure.db_factory import build_dsn, get_sync_connection

app = typer.Typer(help="Generate a synthetic endpoint inventory and load it into Postgres (CSV + COPY).")

CSV_HEADER = ["arn", "platform", "user_id", "created_at"]
PLATFORMS = {"GCM": "android-app", "APNS": "ios-app", "APNS_SANDBOX": "ios-app-dev"}
ACCOUNT_ID = "123456789012"


def _build_dsn(dsn_override: Optional[str]) -> str:
    if dsn_override:
        return dsn_override
    return build_dsn()


def _make_arn(rng: random.Random, region: str, platform: str) -> str:
    endpoint_id = uuid.UUID(int=rng.getrandbits(128), version=4)
    return f"arn:aws:sns:{region}:{ACCOUNT_ID}:endpoint/{platform}/{PLATFORMS[platform]}/{endpoint_id}"


def _generate_rows_csv(
    csv_path: Path,
    rows: int,
    batch_size: int,
    seed: int,
    region: str = "us-east-1",
    blank_ratio: float = 0.02,
    malformed_ratio: float = 0.01,
) -> None:
    rng = random.Random(seed)
    platforms = list(PLATFORMS)
    now = datetime.now(timezone.utc).isoformat()

    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)

        buffer: list[list[str]] = []
        for _ in range(rows):
            platform = rng.choice(platforms)
            roll = rng.random()
            if roll < blank_ratio:
                arn = ""
            elif roll < blank_ratio + malformed_ratio:
                arn = f"arn:aws:sns:{region}:{ACCOUNT_ID}:app/{platform}/broken"
            else:
                arn = _make_arn(rng, region, platform)
            buffer.append([arn, platform, str(rng.randint(1, 1_000_000)), now])
            if len(buffer) >= batch_size:
                writer.writerows(buffer)
                buffer.clear()
        if buffer:
            writer.writerows(buffer)


def _ensure_source_table(conn: psycopg.Connection, table: str) -> None:
    conn.execute(
        sql.SQL(
            """
            CREATE TABLE IF NOT EXISTS {table} (
                id BIGSERIAL PRIMARY KEY,
                arn VARCHAR(500),
                platform VARCHAR(20),
                user_id BIGINT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        ).format(table=sql.Identifier(*table.split(".")))
    )


def _copy_into_db(dsn: str, csv_path: Path, table: Optional[str] = None) -> int:
    """Load the CSV into the source table and return the number of rows copied."""
    table = table or get_settings().source_table_name
    target = sql.Identifier(*table.split("."))
    copied = 0
    with get_sync_connection(dsn) as conn:
        _ensure_source_table(conn, table)
        with conn.cursor() as cur:
            with cur.copy(
                sql.SQL(
                    "COPY {table} (arn, platform, user_id, created_at) "
                    "FROM STDIN WITH (FORMAT csv, HEADER TRUE)"
                ).format(table=target)
            ) as copy:
                with csv_path.open("r", encoding="utf-8") as f:
                    for line in f:
                        copy.write(line)
                        copied += 1
        conn.commit()
    # Header line included in the count.
    return max(copied - 1, 0)


@app.command()
def main(
    rows: int = typer.Option(
        10_000,
        "--rows",
        "-r",
        help="Number of rows to generate.",
    ),
    batch_size: int = typer.Option(
        5_000,
        "--batch-size",
        "-b",
        help="Batch size for CSV buffering during generation.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    table: Optional[str] = typer.Option(
        None,
        "--table",
        "-t",
        help="Source table to load into (default from settings).",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Optional CSV output path (if omitted, a temp file will be used).",
    ),
    dsn: Optional[str] = typer.Option(
        None,
        "--dsn",
        help="Optional DSN override for Postgres.",
    ),
    no_load: bool = typer.Option(
        False,
        "--no-load",
        help="Only generate CSV; skip loading into Postgres.",
    ),
) -> None:
    """
    Generate a synthetic endpoint inventory and optionally load it using COPY.
    """
    start = time.perf_counter()
    if output:
        csv_path = output
        csv_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        tmpdir = Path(tempfile.mkdtemp(prefix="arn_inventory_"))
        csv_path = tmpdir / "endpoints.csv"

    typer.echo(f"Generating {rows:,} endpoint rows -> {csv_path} (batch={batch_size}, seed={seed})")
    _generate_rows_csv(csv_path, rows=rows, batch_size=batch_size, seed=seed, region=get_settings().aws_region)
    gen_duration = time.perf_counter() - start
    typer.echo(f"CSV generation completed in {gen_duration:.2f}s")

    if no_load:
        typer.echo("Skipping load (no-load flag set).")
        return

    load_start = time.perf_counter()
    typer.echo("Loading CSV into Postgres via COPY...")
    copied = _copy_into_db(_build_dsn(dsn), csv_path, table=table)
    load_duration = time.perf_counter() - load_start
    typer.echo(f"Loaded {copied:,} rows in {load_duration:.2f}s.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
