# Copyright (c) Syntropy Systems
"""Fold job results into experiment statistics and write run artifacts.

Layout of an experiment directory::

    config.json
    results.json
    jobs/<job_id>/<job_id>.jsonl
    jobs/<job_id>/cost-report.json
    jobs/<job_id>/snapshots/*.json
    analysis/summary.json
    analysis/model-comparison.json
    analysis/participant-performance.json
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from pydantic import Field, ValidationError

from conclave.errors import ArtifactWriteError, ConfigurationError
from conclave.models.base import ConclaveBaseModel
from conclave.models.experiment import PARTICIPANTS, Participant
from conclave.models.results import (
    ExperimentResults,
    ExperimentStats,
    ExperimentStatus,
    JobResult,
    JobStatus,
)
from conclave.models.usage import CostReport

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from conclave.models.experiment import ExperimentConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
RESULTS_FILE = "results.json"
COST_REPORT_FILE = "cost-report.json"
ANALYSIS_DIR = "analysis"


class AnalysisSummary(ConclaveBaseModel):
    """analysis/summary.json"""

    experiment_id: str
    name: str
    status: ExperimentStatus
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    timed_out_jobs: int
    average_duration_ms: float
    average_steps: float
    draw_rate: float
    top_participant: Optional[str] = None
    top_model: Optional[str] = None
    total_cost_usd: float = 0.0


class ModelComparison(ConclaveBaseModel):
    """analysis/model-comparison.json"""

    win_rates: dict[str, float] = Field(default_factory=dict)
    seats_played: dict[str, int] = Field(default_factory=dict)
    invalid_action_rates: dict[str, float] = Field(default_factory=dict)
    deception_rates: dict[str, float] = Field(default_factory=dict)


class ParticipantPerformance(ConclaveBaseModel):
    """analysis/participant-performance.json"""

    win_rates: dict[Participant, float] = Field(default_factory=dict)
    average_scores: dict[Participant, float] = Field(default_factory=dict)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _mean_rates(rates: Mapping[str, list[float]]) -> dict[str, float]:
    return {model: _mean(values) for model, values in rates.items()}


def fold(results: Sequence[JobResult]) -> ExperimentStats:
    """Compute experiment statistics from job results.

    Counts cover every result. Wins, draws, means and quality rates only
    use completed jobs.
    """
    completed = [r for r in results if r.status == JobStatus.COMPLETED]

    wins_by_participant = dict.fromkeys(PARTICIPANTS, 0)
    wins_by_model: dict[str, int] = {}
    draws = 0
    invalid_rates: dict[str, list[float]] = {}
    deception_rates: dict[str, list[float]] = {}

    for result in completed:
        if result.winner is not None:
            wins_by_participant[result.winner] += 1
            model = result.models_by_participant.get(result.winner)
            if model is not None:
                wins_by_model[model] = wins_by_model.get(model, 0) + 1
        elif result.draw:
            draws += 1

        if result.quality is not None:
            for model, rate in result.quality.invalid_action_rate_by_model.items():
                invalid_rates.setdefault(model, []).append(rate)
            for model, rate in result.quality.deception_rate_by_model.items():
                deception_rates.setdefault(model, []).append(rate)

    average_scores: dict[Participant, float] = {}
    if completed:
        average_scores = {
            participant: _mean([r.final_scores.get(participant, 0) for r in completed])
            for participant in PARTICIPANTS
        }

    return ExperimentStats(
        total_jobs=len(results),
        completed_jobs=len(completed),
        failed_jobs=sum(1 for r in results if r.status == JobStatus.FAILED),
        timed_out_jobs=sum(1 for r in results if r.status == JobStatus.TIMEOUT),
        wins_by_participant=wins_by_participant,
        wins_by_model=wins_by_model,
        draw_count=draws,
        average_duration_ms=_mean([r.duration_ms for r in completed]),
        average_steps=_mean([r.step_count for r in completed]),
        invalid_action_rate_by_model=_mean_rates(invalid_rates),
        deception_rate_by_model=_mean_rates(deception_rates),
        average_score_by_participant=average_scores,
    )


def _top(counts: Mapping[str, int] | Mapping[Participant, int]) -> str | None:
    # First entry wins ties; all-zero counts have no leader.
    top: str | None = None
    top_count = 0
    for key, count in counts.items():
        if count > top_count:
            top = key.value if isinstance(key, Participant) else key
            top_count = count
    return top


def build_analysis(
    results: ExperimentResults,
    stats: ExperimentStats,
) -> tuple[AnalysisSummary, ModelComparison, ParticipantPerformance]:
    """Derive the three analysis documents."""
    config = results.config
    decided = max(stats.completed_jobs, 1)

    summary = AnalysisSummary(
        experiment_id=config.experiment_id,
        name=config.name,
        status=results.status,
        total_jobs=stats.total_jobs,
        completed_jobs=stats.completed_jobs,
        failed_jobs=stats.failed_jobs,
        timed_out_jobs=stats.timed_out_jobs,
        average_duration_ms=stats.average_duration_ms,
        average_steps=stats.average_steps,
        draw_rate=stats.draw_count / decided,
        top_participant=_top(stats.wins_by_participant),
        top_model=_top(stats.wins_by_model),
        total_cost_usd=sum(job.cost_usd for job in results.jobs),
    )

    seats: dict[str, int] = {}
    for job in results.jobs:
        for model in job.models_by_participant.values():
            seats[model] = seats.get(model, 0) + 1
    comparison = ModelComparison(
        win_rates={
            model: wins / max(seats.get(model, 0), 1)
            for model, wins in stats.wins_by_model.items()
        },
        seats_played=seats,
        invalid_action_rates=stats.invalid_action_rate_by_model,
        deception_rates=stats.deception_rate_by_model,
    )

    performance = ParticipantPerformance(
        win_rates={
            participant: stats.wins_by_participant.get(participant, 0) / decided
            for participant in PARTICIPANTS
        },
        average_scores=stats.average_score_by_participant,
    )

    return summary, comparison, performance


def _write(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        _ = path.write_text(text)
    except OSError as e:
        msg = f"Failed to write {path}: {e}"
        raise ArtifactWriteError(msg) from e


def job_dir(output_dir: Path, job_id: str) -> Path:
    """Directory holding one job's artifacts."""
    return output_dir / "jobs" / job_id


def write_config(output_dir: Path, config: ExperimentConfig) -> None:
    """Write config.json. Inline API keys are serialized as null."""
    _write(output_dir / CONFIG_FILE, config.model_dump_json(indent=2))


def write_results(output_dir: Path, results: ExperimentResults) -> None:
    """Write results.json."""
    _write(output_dir / RESULTS_FILE, results.model_dump_json(indent=2))


def write_cost_report(output_dir: Path, report: CostReport) -> None:
    """Write a job's cost-report.json."""
    _write(job_dir(output_dir, report.job_id) / COST_REPORT_FILE, report.model_dump_json(indent=2))


def persist(
    output_dir: Path,
    config: ExperimentConfig,
    results: ExperimentResults,
    stats: ExperimentStats,
) -> None:
    """Write the final artifacts of a run.

    Raises ArtifactWriteError on the first write that fails.
    """
    write_config(output_dir, config)
    write_results(output_dir, results.model_copy(update={"stats": stats}))

    for job in config.jobs or []:
        try:
            job_dir(output_dir, job.job_id).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Failed to create job directory for {job.job_id}: {e}"
            raise ArtifactWriteError(msg) from e

    if not config.run_analysis:
        return

    summary, comparison, performance = build_analysis(results, stats)
    analysis_dir = output_dir / ANALYSIS_DIR
    _write(analysis_dir / "summary.json", summary.model_dump_json(indent=2))
    _write(analysis_dir / "model-comparison.json", comparison.model_dump_json(indent=2))
    _write(
        analysis_dir / "participant-performance.json",
        performance.model_dump_json(indent=2),
    )
    logger.info("Wrote analysis to %s", analysis_dir)


def load_results(output_dir: Path) -> ExperimentResults:
    """Load results.json from an experiment directory."""
    path = output_dir / RESULTS_FILE
    try:
        return ExperimentResults.model_validate_json(path.read_text())
    except FileNotFoundError as e:
        msg = f"No {RESULTS_FILE} in {output_dir}"
        raise ConfigurationError(msg) from e
    except (OSError, ValidationError) as e:
        msg = f"Cannot read {path}: {e}"
        raise ConfigurationError(msg) from e


def load_cost_report(output_dir: Path, job_id: str) -> CostReport:
    """Load a job's cost-report.json."""
    path = job_dir(output_dir, job_id) / COST_REPORT_FILE
    try:
        return CostReport.model_validate_json(path.read_text())
    except FileNotFoundError as e:
        msg = f"No cost report for job '{job_id}' in {output_dir}"
        raise ConfigurationError(msg) from e
    except (OSError, ValidationError) as e:
        msg = f"Cannot read {path}: {e}"
        raise ConfigurationError(msg) from e
