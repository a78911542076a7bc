# Copyright (c) Syntropy Systems
"""conclave resume command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape

from conclave.aggregate import load_results
from conclave.cli.output import console, load_engine, setup_logging
from conclave.cli.run import execute
from conclave.config import load_config
from conclave.errors import ConclaveError
from conclave.models.results import ResumeOptions
from conclave.orchestrator import Orchestrator


def resume(
    output_dir: Path = typer.Argument(
        ...,
        help="Directory of the aborted experiment",
        exists=True,
        file_okay=False,
    ),
    only_interrupted: bool = typer.Option(
        False,
        "--only-interrupted",
        help="Resume interrupted jobs but do not start jobs that never ran",
    ),
    engine: Optional[str] = typer.Option(
        None,
        "--engine", "-e",
        help="Simulation engine as module:attribute (default: mock engine)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Verbose logging",
    ),
) -> None:
    """Continue an aborted experiment from its checkpoints.

    Interrupted jobs re-enter at their last checkpoint; finished jobs are
    kept as they are.
    """
    tool_config = load_config()
    setup_logging(tool_config.log_level, verbose)

    try:
        previous = load_results(output_dir)
        options = ResumeOptions(
            critical_states=previous.critical_states,
            continue_remaining=not only_interrupted,
        )
        orchestrator = Orchestrator.resume(
            output_dir,
            options,
            load_engine(engine or tool_config.engine),
        )
    except ConclaveError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    console.print(
        f"Resuming [bold]{previous.config.experiment_id}[/bold]: "
        f"{len(options.critical_states)} interrupted, {len(previous.jobs)} finished"
    )
    execute(orchestrator)
