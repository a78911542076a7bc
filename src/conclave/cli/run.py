# Copyright (c) Syntropy Systems
"""conclave run command."""
from __future__ import annotations

import re
import signal
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from pydantic import ValidationError
from rich.markup import escape

from conclave.address import parse_assignments
from conclave.cli.output import console, load_engine, print_event, print_summary, setup_logging
from conclave.config import default_output_dir, load_config, load_experiment_file
from conclave.errors import ArtifactWriteError, ConclaveError, ConfigurationError
from conclave.models.experiment import (
    BudgetPolicy,
    ExperimentConfig,
    JobConfig,
    ParticipantAssignment,
)
from conclave.models.results import ExperimentStatus
from conclave.normalize import generate_job_id
from conclave.orchestrator import Orchestrator

if TYPE_CHECKING:
    from types import FrameType

    from conclave.config import ConclaveConfig

DEFAULT_ADDRESS = "mock"


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _parse_assign_flags(values: list[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for value in values:
        participant, sep, spec = value.partition("=")
        if not sep or not participant.strip() or not spec.strip():
            msg = f"--assign expects PARTICIPANT=ADDRESS, got '{value}'"
            raise ConfigurationError(msg)
        mapping[participant.strip()] = spec.strip()
    return mapping


def build_experiment(  # noqa: PLR0913
    tool_config: ConclaveConfig,
    config_file: Path | None = None,
    *,
    jobs: int | None = None,
    concurrency: int | None = None,
    steps: int | None = None,
    address: str | None = None,
    assign: list[str] | None = None,
    name: str | None = None,
    output: Path | None = None,
    max_job_cost: float | None = None,
    max_participant_cost: float | None = None,
    no_analysis: bool = False,
    verbose: bool = False,
) -> ExperimentConfig:
    """Combine an experiment file (if any), CLI flags and tool defaults.

    Flags win over the file, and the file wins over the tool config.
    """
    if config_file is not None:
        experiment = load_experiment_file(config_file)
    else:
        experiment_id = _slug(name) if name else f"exp-{datetime.now():%Y%m%d-%H%M%S}"
        experiment = ExperimentConfig(
            experiment_id=experiment_id or "experiment",
            name=name or "",
        )
        if not address and not experiment.backends:
            address = DEFAULT_ADDRESS

    updates: dict[str, object] = {}
    if name:
        updates["name"] = name
    if jobs is not None:
        updates["job_count"] = jobs
    if concurrency is not None:
        updates["concurrency"] = concurrency
    elif "concurrency" not in experiment.model_fields_set:
        updates["concurrency"] = tool_config.concurrency
    if steps is not None:
        updates["max_steps_per_job"] = steps
    if address:
        updates["default_address"] = address
        updates["default_backend"] = None
    if output is not None:
        updates["output_dir"] = output
    elif experiment.output_dir is None:
        updates["output_dir"] = default_output_dir(tool_config, experiment.experiment_id)
    if no_analysis:
        updates["run_analysis"] = False
    if verbose:
        updates["verbose"] = True

    budget = experiment.budget or BudgetPolicy(warning_threshold=tool_config.warning_threshold)
    if max_job_cost is not None or max_participant_cost is not None:
        try:
            budget = BudgetPolicy(
                max_job_cost=budget.max_job_cost if max_job_cost is None else max_job_cost,
                max_participant_cost=(
                    budget.max_participant_cost
                    if max_participant_cost is None
                    else max_participant_cost
                ),
                warning_threshold=budget.warning_threshold,
            )
        except ValidationError as e:
            msg = f"Invalid budget: {e}"
            raise ConfigurationError(msg) from e
    updates["budget"] = budget

    experiment = experiment.model_copy(update=updates)
    if assign:
        experiment = _apply_assignments(experiment, _parse_assign_flags(assign))
    return experiment


def _apply_assignments(experiment: ExperimentConfig, mapping: dict[str, str]) -> ExperimentConfig:
    backends, by_participant = parse_assignments(mapping)
    known = {backend.id for backend in experiment.backends}
    merged = list(experiment.backends) + [b for b in backends if b.id not in known]

    overrides = [
        ParticipantAssignment(participant=participant, backend=backend_id)
        for participant, backend_id in by_participant.items()
    ]
    overridden = set(by_participant)

    if experiment.jobs:
        jobs = [
            job.model_copy(
                update={
                    "assignments": [
                        a for a in job.assignments if a.participant not in overridden
                    ]
                    + overrides
                }
            )
            for job in experiment.jobs
        ]
    else:
        jobs = [
            JobConfig(job_id=generate_job_id(experiment.experiment_id, i), assignments=overrides)
            for i in range(1, experiment.job_count + 1)
        ]

    return experiment.model_copy(update={"backends": merged, "jobs": jobs})


def execute(orchestrator: Orchestrator) -> None:
    """Run an orchestrator with progress output and SIGINT handling.

    Exits with status 1 unless the experiment completed.
    """

    def _on_sigint(signum: int, frame: FrameType | None) -> None:
        _ = (signum, frame)
        console.print("\n[yellow]Abort requested, stopping in-flight jobs...[/yellow]")
        orchestrator.abort()

    _ = orchestrator.on_event(print_event)
    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        results = orchestrator.run()
    except ArtifactWriteError as e:
        console.print(f"[red]Error writing artifacts:[/red] {escape(str(e))}")
        print_summary(orchestrator.get_results())
        raise typer.Exit(1) from e
    except ConclaveError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e
    finally:
        _ = signal.signal(signal.SIGINT, previous)

    print_summary(results)
    console.print(f"\n[dim]Artifacts: {orchestrator.output_dir}[/dim]")
    if results.status != ExperimentStatus.COMPLETED:
        raise typer.Exit(1)


def run(
    config_file: Optional[Path] = typer.Argument(
        None,
        help="Experiment file (YAML or JSON)",
        exists=True,
        dir_okay=False,
    ),
    jobs: Optional[int] = typer.Option(
        None,
        "--jobs", "-j",
        min=1,
        help="Number of jobs to run",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency", "-c",
        min=1,
        help="Maximum jobs in flight at once",
    ),
    steps: Optional[int] = typer.Option(
        None,
        "--steps", "-s",
        min=0,
        help="Step ceiling per job (0 = unlimited)",
    ),
    address: Optional[str] = typer.Option(
        None,
        "--address", "-a",
        help="Default backend address, e.g. openai:gpt-4o or mock",
    ),
    assign: Optional[list[str]] = typer.Option(
        None,
        "--assign",
        help="Per-participant address, e.g. ENGLAND=claude-sonnet-4 (repeatable)",
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name", "-n",
        help="Experiment name",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output directory",
    ),
    engine: Optional[str] = typer.Option(
        None,
        "--engine", "-e",
        help="Simulation engine as module:attribute (default: mock engine)",
    ),
    max_job_cost: Optional[float] = typer.Option(
        None,
        "--max-job-cost",
        min=0,
        help="Cost ceiling per job in USD",
    ),
    max_participant_cost: Optional[float] = typer.Option(
        None,
        "--max-participant-cost",
        min=0,
        help="Cost ceiling per participant in USD",
    ),
    no_analysis: bool = typer.Option(
        False,
        "--no-analysis",
        help="Skip writing analysis files",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Verbose logging",
    ),
) -> None:
    r"""Run an experiment.

    Examples:

    \b
        conclave run experiment.yaml
        conclave run --jobs 3 --concurrency 2 --address mock
        conclave run --address gpt-4o --assign ENGLAND=claude-sonnet-4-20250514
    """
    tool_config = load_config()
    setup_logging(tool_config.log_level, verbose)

    try:
        experiment = build_experiment(
            tool_config,
            config_file,
            jobs=jobs,
            concurrency=concurrency,
            steps=steps,
            address=address,
            assign=assign,
            name=name,
            output=output,
            max_job_cost=max_job_cost,
            max_participant_cost=max_participant_cost,
            no_analysis=no_analysis,
            verbose=verbose,
        )
        orchestrator = Orchestrator(experiment, load_engine(engine or tool_config.engine))
    except ConclaveError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    execute(orchestrator)
