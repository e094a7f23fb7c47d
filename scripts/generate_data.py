"""
Data generation script for tsmigrate.

Seeds a Zabbix-style history table (itemid, clock, value, ns) with
deterministic pseudo-random samples spread over the lookback horizon, loaded
with Postgres COPY, and can keep trickling live writes into it so a migration
can be exercised against a table that is still being written to.
"""

from __future__ import annotations

import csv
import random
import sys
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import typer
from psycopg import sql

from tsmigrate.domain.models import to_clock
from tsmigrate.infrastructure.db_factory import build_dsn

app = typer.Typer(help="Seed and feed a history table for migration testing (CSV + COPY).")

_HISTORY_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    itemid bigint NOT NULL,
    clock integer NOT NULL DEFAULT 0,
    value numeric(20, 0) NOT NULL DEFAULT 0,
    ns integer NOT NULL DEFAULT 0
)
"""


def _build_dsn(dsn_override: str | None) -> str:
    if dsn_override:
        return dsn_override
    return build_dsn()


def _table(name: str) -> sql.Identifier:
    return sql.Identifier(*name.split(".", 1))


def _generate_rows_csv(
    csv_path: Path, rows: int, items: int, days: int, batch_size: int, seed: int
) -> None:
    rng = random.Random(seed)
    end_clock = to_clock(datetime.now(timezone.utc))
    start_clock = end_clock - int(timedelta(days=days).total_seconds())

    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["itemid", "clock", "value", "ns"])

        buffer: list[list[int]] = []
        for _ in range(rows):
            buffer.append(
                [
                    rng.randint(1, items),
                    rng.randint(start_clock, end_clock - 1),
                    rng.randint(0, 2**32),
                    rng.randint(0, 999_999_999),
                ]
            )
            if len(buffer) >= batch_size:
                writer.writerows(buffer)
                buffer.clear()
        if buffer:
            writer.writerows(buffer)


def _copy_into_db(dsn: str, table: str, csv_path: Path) -> None:
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(sql.SQL(_HISTORY_DDL).format(table=_table(table)))
            with cur.copy(
                sql.SQL(
                    "COPY {} (itemid, clock, value, ns) FROM STDIN WITH (FORMAT csv, HEADER TRUE)"
                ).format(_table(table))
            ) as copy:
                with csv_path.open("r", encoding="utf-8") as f:
                    for line in f:
                        copy.write(line)
            conn.commit()


@app.command()
def seed(
    table: str = typer.Option("history_uint", "--table", "-t", help="History table to fill."),
    rows: int = typer.Option(1_000_000, "--rows", "-r", help="Number of rows to generate."),
    items: int = typer.Option(1_000, "--items", help="Number of distinct itemids."),
    days: int = typer.Option(35, "--days", help="Spread samples over this many days back."),
    batch_size: int = typer.Option(
        10_000, "--batch-size", "-b", help="Batch size for CSV buffering during generation."
    ),
    seed_value: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Optional CSV output path (if omitted, a temp file is used)."
    ),
    dsn: str | None = typer.Option(None, "--dsn", help="Optional DSN override for Postgres."),
    no_load: bool = typer.Option(
        False, "--no-load", help="Only generate CSV; skip loading into Postgres."
    ),
) -> None:
    """
    Generate history samples and optionally load them into Postgres using COPY.
    """
    start = time.perf_counter()
    if output:
        csv_path = output
        csv_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        tmpdir = Path(tempfile.mkdtemp(prefix="tsmigrate_csv_"))
        csv_path = tmpdir / f"{table}.csv"

    typer.echo(f"Generating {rows:,} rows over {days} days -> {csv_path} (seed={seed_value})")
    _generate_rows_csv(
        csv_path, rows=rows, items=items, days=days, batch_size=batch_size, seed=seed_value
    )
    gen_duration = time.perf_counter() - start
    typer.echo(
        f"CSV generation completed in {gen_duration:.2f}s ({rows / gen_duration:,.0f} rows/s)"
    )

    if no_load:
        typer.echo("Skipping load (no-load flag set).")
        return

    load_start = time.perf_counter()
    typer.echo(f"Loading CSV into {table} via COPY...")
    _copy_into_db(_build_dsn(dsn), table, csv_path)
    load_duration = time.perf_counter() - load_start

    total_duration = time.perf_counter() - start
    typer.echo(
        f"Load completed in {load_duration:.2f}s. Total time {total_duration:.2f}s "
        f"({rows / total_duration:,.0f} rows/s overall)."
    )


@app.command()
def trickle(
    table: str = typer.Option("history_uint", "--table", "-t", help="History table to write to."),
    rate: int = typer.Option(100, "--rate", help="Rows inserted per second."),
    duration: int = typer.Option(60, "--duration", help="Seconds to run; 0 runs until Ctrl-C."),
    items: int = typer.Option(1_000, "--items", help="Number of distinct itemids."),
    seed_value: int = typer.Option(7, "--seed", help="Deterministic RNG seed."),
    dsn: str | None = typer.Option(None, "--dsn", help="Optional DSN override for Postgres."),
) -> None:
    """
    Keep inserting current samples, one transaction per second, like a
    running Zabbix server.
    """
    rng = random.Random(seed_value)
    insert = sql.SQL("INSERT INTO {} (itemid, clock, value, ns) VALUES (%s, %s, %s, %s)").format(
        _table(table)
    )
    written = 0
    started = time.monotonic()
    with psycopg.connect(_build_dsn(dsn)) as conn:
        while duration == 0 or time.monotonic() - started < duration:
            tick = time.monotonic()
            clock = to_clock(datetime.now(timezone.utc))
            with conn.cursor() as cur:
                cur.executemany(
                    insert,
                    [
                        (rng.randint(1, items), clock, rng.randint(0, 2**32), rng.randint(0, 999_999_999))
                        for _ in range(rate)
                    ],
                )
            conn.commit()
            written += rate
            time.sleep(max(0.0, 1.0 - (time.monotonic() - tick)))
    typer.echo(f"Inserted {written:,} rows into {table}.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
