# Copyright (c) Syntropy Systems
"""Console, logging and rendering helpers shared by the CLI commands."""
from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING, cast

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from conclave.errors import ConfigurationError
from conclave.models.experiment import PARTICIPANTS
from conclave.models.results import EventType, JobStatus

if TYPE_CHECKING:
    from conclave.engine import SimulationEngine
    from conclave.models.results import ExperimentEvent, ExperimentResults

console = Console()

STATUS_STYLES: dict[str, str] = {
    "completed": "green",
    "failed": "red",
    "timeout": "yellow",
    "running": "blue",
    "aborted": "yellow",
}


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Send library logging to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def load_engine(spec: str | None) -> SimulationEngine | None:
    """Load an engine from a ``module:attribute`` string.

    Classes and factory functions are called with no arguments.
    """
    if not spec:
        return None
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Engine must be given as 'module:attribute', got '{spec}'"
        raise ConfigurationError(msg)
    try:
        module = importlib.import_module(module_name)
        target = cast("object", getattr(module, attr))
    except (ImportError, AttributeError) as e:
        msg = f"Cannot load engine '{spec}': {e}"
        raise ConfigurationError(msg) from e
    if callable(target):
        target = target()
    return cast("SimulationEngine", target)


def format_duration(ms: float | None) -> str:
    """Format a duration in milliseconds to human readable."""
    if ms is None:
        return "-"

    total = int(ms / 1000)
    if total < 60:
        return f"{total}s"
    if total < 3600:
        m, s = divmod(total, 60)
        return f"{m}m {s}s"
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}h {m}m"


def print_event(event: ExperimentEvent) -> None:
    """Render one experiment event as a progress line."""
    progress = event.progress
    counter = ""
    if progress is not None:
        done = progress.finished_jobs
        counter = f"[dim][{done}/{progress.total_jobs}][/dim] "

    if event.type == EventType.EXPERIMENT_STARTED:
        console.print(f"[bold]Experiment {event.experiment_id} started[/bold]")
    elif event.type == EventType.JOB_STARTED:
        console.print(f"{counter}[blue]started[/blue] {event.job_id}")
    elif event.type == EventType.JOB_COMPLETED and event.result is not None:
        result = event.result
        outcome = result.winner.value if result.winner else ("draw" if result.draw else "-")
        console.print(
            f"{counter}[green]completed[/green] {event.job_id} "
            f"({outcome}, {result.step_count} steps, ${result.cost_usd:.4f})"
        )
    elif event.type == EventType.JOB_FAILED:
        status = event.result.status if event.result else JobStatus.FAILED
        style = STATUS_STYLES[status.value]
        console.print(f"{counter}[{style}]{status.value}[/{style}] {event.job_id}: {event.error}")
    elif event.type == EventType.EXPERIMENT_ABORTED:
        console.print("[yellow]Experiment aborted[/yellow]")


def print_summary(results: ExperimentResults) -> None:
    """Print a human-readable summary built from the experiment statistics."""
    stats = results.stats
    style = STATUS_STYLES[results.status.value]

    console.print()
    console.print(f"[bold]Experiment:[/bold] {results.config.experiment_id}")
    if results.config.name:
        console.print(f"[bold]Name:[/bold] {results.config.name}")
    console.print(f"[bold]Status:[/bold] [{style}]{results.status.value}[/{style}]")
    console.print(f"[bold]Duration:[/bold] {format_duration(results.duration_ms)}")
    console.print(
        f"[bold]Jobs:[/bold] {stats.completed_jobs} completed, "
        f"{stats.failed_jobs} failed, {stats.timed_out_jobs} timed out "
        f"(of {results.config.job_count})"
    )
    if stats.completed_jobs:
        console.print(
            f"[bold]Averages:[/bold] {format_duration(stats.average_duration_ms)}, "
            f"{stats.average_steps:.1f} steps, {stats.draw_count} draw(s)"
        )
    total_cost = sum(job.cost_usd for job in results.jobs)
    console.print(f"[bold]Total cost:[/bold] ${total_cost:.4f}")
    if results.critical_states:
        console.print(
            f"[yellow]{len(results.critical_states)} interrupted job(s) can be resumed "
            "with 'conclave resume'[/yellow]"
        )

    if not stats.completed_jobs:
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Participant")
    table.add_column("Wins", justify="right")
    table.add_column("Avg score", justify="right")
    for participant in PARTICIPANTS:
        table.add_row(
            participant.value,
            str(stats.wins_by_participant.get(participant, 0)),
            f"{stats.average_score_by_participant.get(participant, 0.0):.1f}",
        )
    console.print(table)

    if stats.wins_by_model:
        models = Table(show_header=True, header_style="bold")
        models.add_column("Model")
        models.add_column("Wins", justify="right")
        models.add_column("Invalid rate", justify="right")
        for model, wins in sorted(stats.wins_by_model.items(), key=lambda kv: -kv[1]):
            rate = stats.invalid_action_rate_by_model.get(model)
            models.add_row(model, str(wins), "-" if rate is None else f"{rate:.1%}")
        console.print(models)
