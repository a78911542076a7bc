# Copyright (c) Syntropy Systems
"""conclave show command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from conclave.aggregate import fold, load_results
from conclave.checkpoint import CheckpointStore
from conclave.cli.output import STATUS_STYLES, console, format_duration, print_summary
from conclave.errors import ConfigurationError
from conclave.models.results import ExperimentResults


def show(
    output_dir: Path = typer.Argument(
        ...,
        help="Experiment directory",
        exists=True,
        file_okay=False,
    ),
) -> None:
    """Show the results of an experiment.

    Displays the summary statistics, one row per job and any interrupted
    jobs waiting to be resumed.
    """
    try:
        results = load_results(output_dir)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    # Intermediate results.json files are written before stats are final
    results.stats = fold(results.jobs)
    print_summary(results)

    if results.jobs:
        _print_jobs(results)
    else:
        console.print("[dim]No finished jobs[/dim]")

    if results.critical_states:
        _print_interrupted(output_dir, results)


def _print_jobs(results: ExperimentResults) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Job", style="dim")
    table.add_column("Status")
    table.add_column("Outcome")
    table.add_column("Steps", justify="right")
    table.add_column("Duration")
    table.add_column("Cost", justify="right")
    table.add_column("Error")

    for job in results.jobs:
        style = STATUS_STYLES[job.status.value]
        if job.winner is not None:
            outcome = job.winner.value
        elif job.draw:
            outcome = "draw"
        else:
            outcome = "-"
        table.add_row(
            job.job_id,
            f"[{style}]{job.status.value}[/{style}]",
            outcome,
            str(job.step_count),
            format_duration(job.duration_ms),
            f"${job.cost_usd:.4f}",
            job.error or "",
        )

    console.print(table)


def _print_interrupted(output_dir: Path, results: ExperimentResults) -> None:
    store = CheckpointStore(output_dir)
    console.print()
    console.print("[bold]Interrupted jobs[/bold] [dim](conclave resume to continue)[/dim]")
    for state in results.critical_states:
        try:
            saved = len(store.list_refs(state.job_id))
        except ConfigurationError as e:
            console.print(f"  [red]{state.job_id}[/red]: {escape(str(e))}")
            continue
        console.print(
            f"  {state.job_id}: resumes at {state.resume_time.label()} "
            f"from step {state.snapshot.step}, {saved} checkpoint(s)"
        )
