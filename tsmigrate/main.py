from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn, Optional

import psycopg
import typer

from tsmigrate.config import MigrationConfig, get_settings
from tsmigrate.domain.models import MigrationPhase
from tsmigrate.exceptions import MigrationError
from tsmigrate.infrastructure.db_factory import get_sync_connection, get_sync_pool
from tsmigrate.orchestrator import MigrationOrchestrator, persist_report
from tsmigrate.phases.interceptor import ceil_to_second
from tsmigrate.phases.planner import SegmentPlanner
from tsmigrate.reporter import print_plan, print_results, print_status
from tsmigrate.storage.timescale import TimescaleBackend
from tsmigrate.utils.logging import configure_logging

app = typer.Typer(help="Online migration of a history table to a compressed TimescaleDB hypertable.")


def _configure_logging() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)


def _backend() -> TimescaleBackend:
    settings = get_settings()
    return TimescaleBackend(
        get_sync_pool(),
        state_table=settings.state_table,
        config_table=settings.config_table,
    )


def _orchestrator(table: str) -> MigrationOrchestrator:
    return MigrationOrchestrator(_backend(), table, MigrationConfig.from_settings())


def _parse_start_time(value: Optional[str]) -> datetime:
    if value is None:
        moment = datetime.now(timezone.utc)
    else:
        try:
            moment = datetime.fromisoformat(value)
        except ValueError:
            raise typer.BadParameter(f"not an ISO-8601 timestamp: {value}") from None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
    return ceil_to_second(moment)


def _parse_phase(value: Optional[str]) -> Optional[MigrationPhase]:
    if value is None:
        return None
    try:
        phase = MigrationPhase(value.lower())
    except ValueError:
        raise typer.BadParameter(f"unknown phase: {value}") from None
    if not phase.is_pre_swap or phase in (MigrationPhase.IDLE, MigrationPhase.PLANNING):
        raise typer.BadParameter("--until takes one of: copying, compressing, indexing, swapping")
    return phase


def _fail(exc: MigrationError) -> NoReturn:
    typer.echo(f"{type(exc).__name__}: {exc}", err=True)
    raise typer.Exit(code=1)


@app.command()
def info(
    check: bool = typer.Option(False, "--check", help="Connect and report server and extension versions."),
) -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    config = MigrationConfig.from_settings(settings)
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"window={config.window_size} horizon={config.horizon} margin={config.safety_margin} "
        f"partition={config.partition_interval}"
    )
    typer.echo(
        f"segment_by={config.segment_by} order_by={','.join(config.order_by)} "
        f"index={','.join(config.index_columns)} lock_timeout={config.lock_timeout_ms}ms "
        f"retries={config.retry_attempts} compression={config.compression_failure_policy}"
    )
    typer.echo(f"cutover config ({settings.config_table}): {json.dumps(dict(config.cutover_config))}")
    if not check:
        return
    try:
        with get_sync_connection() as conn:
            server = conn.execute("SHOW server_version").fetchone()
            extension = conn.execute(
                "SELECT extversion FROM pg_extension WHERE extname = 'timescaledb'"
            ).fetchone()
    except psycopg.Error as exc:
        typer.echo(f"Connection failed: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"server={server[0] if server else '?'} "
        f"timescaledb={extension[0] if extension else 'not installed'}"
    )


@app.command()
def plan(
    table: str = typer.Argument(..., help="Live table to migrate."),
    start_time: Optional[str] = typer.Option(
        None, "--start-time", help="ISO-8601 StartTime to plan from (default: now, UTC)."
    ),
) -> None:
    """
    Print the window plan a migration would follow. Touches nothing.
    """
    config = MigrationConfig.from_settings()
    try:
        window_plan = SegmentPlanner(config).plan(_parse_start_time(start_time))
    except MigrationError as exc:
        _fail(exc)
    names = config.table_names(table)
    typer.echo(f"{names.source} -> {names.target} (buffer {names.buffer}, old {names.old})")
    print_plan(window_plan)


@app.command()
def run(
    table: str = typer.Argument(..., help="Live table to migrate."),
    retry_failed: bool = typer.Option(
        False, "--retry-failed", help="Reopen a failed migration at the phase it failed in."
    ),
    until: Optional[str] = typer.Option(
        None, "--until", help="Stop before this phase (e.g. swapping) and return."
    ),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write a JSON run report."),
    results_dir: Path = typer.Option(Path("results"), "--results-dir", help="Report directory."),
) -> None:
    """
    Start the migration of TABLE, or resume the one in progress.
    """
    _configure_logging()
    stop_before = _parse_phase(until)
    try:
        orchestrator = _orchestrator(table)
        state = orchestrator.run(retry_failed=retry_failed, stop_before=stop_before)
    except MigrationError as exc:
        _fail(exc)

    if persist:
        persist_report(orchestrator.report(state), results_dir)
    print_results(list(orchestrator.results))
    print_status(state)


@app.command()
def status() -> None:
    """
    Show the persisted migration state and window progress.
    """
    try:
        state = _backend().load_state()
    except MigrationError as exc:
        _fail(exc)
    print_status(state)


@app.command()
def abort(
    table: str = typer.Argument(..., help="Table whose migration to abandon."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """
    Abandon a migration that has not swapped: drop the buffer and the target.
    """
    _configure_logging()
    if not yes:
        typer.confirm(f"Drop the buffer and the partially built target of {table}?", abort=True)
    try:
        _orchestrator(table).abort()
    except MigrationError as exc:
        _fail(exc)
    typer.echo(f"Migration of {table} aborted.")


@app.command()
def rollback(
    table: str = typer.Argument(..., help="Table whose completed migration to undo."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """
    Put the old table back live and restore the configuration flags.
    """
    _configure_logging()
    if not yes:
        typer.confirm(f"Make the pre-migration {table} live again?", abort=True)
    try:
        carried = _orchestrator(table).rollback()
    except MigrationError as exc:
        _fail(exc)
    typer.echo(f"Rolled back {table}; carried {carried:,} rows missing from the old table.")


@app.command()
def finalize(
    table: str = typer.Argument(..., help="Table whose completed migration to finalize."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """
    Drop the retained old table and clear the migration state.
    """
    _configure_logging()
    if not yes:
        typer.confirm(f"Permanently drop the pre-migration copy of {table}?", abort=True)
    try:
        dropped = _orchestrator(table).finalize()
    except MigrationError as exc:
        _fail(exc)
    typer.echo(f"Dropped {dropped}.")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
