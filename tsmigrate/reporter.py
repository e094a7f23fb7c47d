from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from tsmigrate.domain.models import MigrationPlan, MigrationState, WindowState

_WINDOW_STYLES = {
    WindowState.PLANNED: "dim",
    WindowState.COPYING: "yellow",
    WindowState.COPIED: "cyan",
    WindowState.COMPRESSING: "yellow",
    WindowState.COMPRESSED: "green",
}


def _windows_table(plan: MigrationPlan, title: str, caption: Optional[str] = None) -> Table:
    table = Table(title=title, box=box.ROUNDED, caption=caption)
    table.add_column("#", justify="right", style="blue")
    table.add_column("Start", style="cyan", no_wrap=True)
    table.add_column("End", style="cyan", no_wrap=True)
    table.add_column("State")
    table.add_column("Rows", justify="right", style="magenta")
    table.add_column("Compress older than", style="dim", no_wrap=True)

    for window in plan.windows:
        cutoff = plan.compression_cutoff(window)
        style = _WINDOW_STYLES.get(window.state, "")
        table.add_row(
            str(window.index),
            window.start.isoformat(),
            window.end.isoformat(),
            f"[{style}]{window.state.value}[/{style}]" if style else window.state.value,
            f"{window.rows_copied:,}" if window.rows_copied is not None else "-",
            cutoff.isoformat() if cutoff is not None else "not compressed",
        )
    return table


def print_plan(plan: MigrationPlan, console: Optional[Console] = None) -> None:
    """Render a window plan as a rich table."""
    console = console or Console()
    console.print(
        _windows_table(
            plan,
            title=f"Window plan from StartTime {plan.start_time.isoformat()}",
            caption=f"window={plan.window_size} horizon={plan.horizon} margin={plan.safety_margin}",
        )
    )


def print_status(state: Optional[MigrationState], console: Optional[Console] = None) -> None:
    """
    Render the persisted migration state: phase, table identities and the
    progress of every window.
    """
    console = console or Console()

    if state is None:
        console.print("[yellow]No migration in progress.[/yellow]")
        return

    names = state.names
    phase = state.phase.value.upper()
    if state.failed_phase is not None:
        phase = f"{phase} (in {state.failed_phase.value.upper()})"
    console.print(f"[bold]{names.source}[/bold]: {phase}")
    console.print(
        f"[dim]target={names.target} buffer={names.buffer} old={names.old} "
        f"updated={state.updated_at.isoformat()}[/dim]"
    )
    if state.last_error:
        console.print(f"[red]last error: {state.last_error}[/red]")
    if state.uncompressed_segments:
        console.print(
            f"[yellow]{len(state.uncompressed_segments)} segments left uncompressed[/yellow]"
        )
    if state.rows_drained is not None:
        console.print(f"drained {state.rows_drained:,} buffered rows")

    if state.plan is not None:
        compressed = (
            state.compressed_before.isoformat() if state.compressed_before is not None else "nothing"
        )
        console.print(
            _windows_table(
                state.plan,
                title=f"Windows (StartTime {state.plan.start_time.isoformat()})",
                caption=f"compressed before: {compressed}",
            )
        )


def print_results(results: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    """Render the timed steps of a run."""
    console = console or Console()

    if not results:
        console.print("[yellow]No results to display.[/yellow]")
        return

    table = Table(title="Migration steps", box=box.ROUNDED)
    table.add_column("Step", style="cyan", no_wrap=True)
    table.add_column("Rows", justify="right", style="magenta")
    table.add_column("Duration (s)", justify="right", style="green")
    table.add_column("Throughput (rows/s)", justify="right", style="bold green")
    table.add_column("Notes", style="dim")

    for res in results:
        duration = res.get("duration_seconds")
        throughput = res.get("throughput_rows_per_sec")
        table.add_row(
            res.get("step", "?"),
            f"{res.get('rows', 0):,}",
            f"{duration:.1f}" if duration is not None else "-",
            f"{throughput:,.2f}" if throughput is not None else "-",
            res.get("notes") or "",
        )

    console.print(table)


__all__ = ["print_plan", "print_results", "print_status"]
