# Copyright (c) Syntropy Systems
"""conclave costs command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape
from rich.table import Table

from conclave.aggregate import load_cost_report, load_results
from conclave.cli.output import console
from conclave.errors import ConfigurationError
from conclave.governor import format_cost_report


def costs(
    output_dir: Path = typer.Argument(
        ...,
        help="Experiment directory",
        exists=True,
        file_okay=False,
    ),
    job_id: Optional[str] = typer.Argument(
        None,
        help="Show the full cost report of one job",
    ),
) -> None:
    """Show token usage and cost.

    Without JOB_ID, lists the cost of every job. With it, prints that job's
    breakdown by model, participant and stage.
    """
    try:
        if job_id is not None:
            report = load_cost_report(output_dir, job_id)
            console.print(format_cost_report(report), markup=False, highlight=False)
            return
        results = load_results(output_dir)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    if not results.jobs:
        console.print("[dim]No finished jobs[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Job", style="dim")
    table.add_column("Status")
    table.add_column("Cost", justify="right")

    total = 0.0
    for job in results.jobs:
        total += job.cost_usd
        table.add_row(job.job_id, job.status.value, f"${job.cost_usd:.4f}")
    table.add_row("[bold]Total[/bold]", "", f"[bold]${total:.4f}[/bold]")

    console.print(table)
