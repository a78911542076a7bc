# Copyright (c) Syntropy Systems
"""Tests for result folding and artifact writing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conclave.aggregate import build_analysis, fold, load_cost_report, load_results, persist
from conclave.errors import ConfigurationError
from conclave.models.base import utcnow
from conclave.models.experiment import PARTICIPANTS, ExperimentConfig, Participant
from conclave.models.results import (
    ExperimentResults,
    ExperimentStatus,
    JobResult,
    JobStatus,
    QualityStats,
)
from conclave.normalize import normalize


def make_result(
    job_id: str,
    status: JobStatus = JobStatus.COMPLETED,
    *,
    winner: Participant | None = None,
    draw: bool = False,
    duration_ms: float = 1000.0,
    steps: int = 10,
    scores: dict[Participant, int] | None = None,
    models: dict[Participant, str] | None = None,
    quality: QualityStats | None = None,
    cost: float = 0.0,
) -> JobResult:
    now = utcnow()
    return JobResult(
        job_id=job_id,
        experiment_id="exp",
        started_at=now,
        completed_at=now,
        duration_ms=duration_ms,
        winner=winner,
        draw=draw,
        step_count=steps,
        final_scores=scores or {},
        models_by_participant=models or dict.fromkeys(PARTICIPANTS, "mock"),
        log_path=f"jobs/{job_id}/{job_id}.jsonl",
        quality=quality,
        cost_usd=cost,
        status=status,
    )


class TestFold:
    """Tests for fold()."""

    def test_empty(self) -> None:
        stats = fold([])

        assert stats.total_jobs == 0
        assert stats.average_duration_ms == 0
        assert stats.average_score_by_participant == {}
        assert all(count == 0 for count in stats.wins_by_participant.values())
        assert set(stats.wins_by_participant) == set(PARTICIPANTS)

    def test_counts_and_wins(self) -> None:
        models = {p: ("gpt-4o" if p == Participant.FRANCE else "mock") for p in PARTICIPANTS}
        results = [
            make_result("a", winner=Participant.FRANCE, models=models),
            make_result("b", winner=Participant.FRANCE, models=models),
            make_result("c", draw=True),
            make_result("d", JobStatus.FAILED, winner=Participant.TURKEY),
            make_result("e", JobStatus.TIMEOUT),
        ]

        stats = fold(results)

        assert stats.total_jobs == 5
        assert stats.completed_jobs == 3
        assert stats.failed_jobs == 1
        assert stats.timed_out_jobs == 1
        assert stats.wins_by_participant[Participant.FRANCE] == 2
        assert stats.wins_by_participant[Participant.TURKEY] == 0
        assert stats.wins_by_model == {"gpt-4o": 2}
        assert stats.draw_count == 1

    def test_means_cover_completed_jobs_only(self) -> None:
        results = [
            make_result("a", duration_ms=1000, steps=10, scores={Participant.ITALY: 6}),
            make_result("b", duration_ms=3000, steps=20, scores={Participant.ITALY: 2}),
            make_result("c", JobStatus.FAILED, duration_ms=99_000, steps=1),
        ]

        stats = fold(results)

        assert stats.average_duration_ms == pytest.approx(2000)
        assert stats.average_steps == pytest.approx(15)
        assert stats.average_score_by_participant[Participant.ITALY] == pytest.approx(4)
        assert stats.average_score_by_participant[Participant.RUSSIA] == 0

    def test_quality_rates_are_means(self) -> None:
        results = [
            make_result(
                "a",
                quality=QualityStats(
                    invalid_action_rate_by_model={"mock": 0.1},
                    deception_rate_by_model={"mock": 0.5},
                ),
            ),
            make_result(
                "b",
                quality=QualityStats(invalid_action_rate_by_model={"mock": 0.3}),
            ),
            make_result("c"),
        ]

        stats = fold(results)

        assert stats.invalid_action_rate_by_model == {"mock": pytest.approx(0.2)}
        assert stats.deception_rate_by_model == {"mock": pytest.approx(0.5)}

    def test_pure(self) -> None:
        results = [make_result("a", winner=Participant.ENGLAND), make_result("b", draw=True)]

        first = fold(results)
        second = fold(list(reversed(results)))

        assert first == second
        assert [r.job_id for r in results] == ["a", "b"]


class TestAnalysis:
    """Tests for the analysis documents."""

    def test_summary_and_rates(self, mock_experiment: ExperimentConfig) -> None:
        results = ExperimentResults(
            config=normalize(mock_experiment),
            status=ExperimentStatus.COMPLETED,
            jobs=[
                make_result("a", winner=Participant.AUSTRIA, cost=0.25),
                make_result("b", winner=Participant.AUSTRIA, cost=0.5),
                make_result("c", draw=True),
                make_result("d", JobStatus.FAILED),
            ],
        )
        stats = fold(results.jobs)

        summary, comparison, performance = build_analysis(results, stats)

        assert summary.top_participant == "AUSTRIA"
        assert summary.top_model == "mock"
        assert summary.draw_rate == pytest.approx(1 / 3)
        assert summary.total_cost_usd == pytest.approx(0.75)
        assert comparison.seats_played == {"mock": 28}
        assert comparison.win_rates == {"mock": pytest.approx(2 / 28)}
        assert performance.win_rates[Participant.AUSTRIA] == pytest.approx(2 / 3)

    def test_no_leader_without_wins(self, mock_experiment: ExperimentConfig) -> None:
        results = ExperimentResults(config=normalize(mock_experiment), jobs=[make_result("a", draw=True)])

        summary, _, _ = build_analysis(results, fold(results.jobs))

        assert summary.top_participant is None
        assert summary.top_model is None


class TestPersist:
    """Tests for writing and loading artifacts."""

    def test_persist_writes_layout(self, mock_experiment: ExperimentConfig) -> None:
        config = normalize(mock_experiment)
        out = config.resolved_output_dir()
        results = ExperimentResults(
            config=config,
            status=ExperimentStatus.COMPLETED,
            jobs=[make_result("exp-job-1", winner=Participant.GERMANY)],
        )

        persist(out, config, results, fold(results.jobs))

        assert (out / "config.json").exists()
        assert (out / "jobs" / "exp-job-3").is_dir()
        summary = json.loads((out / "analysis" / "summary.json").read_text())
        assert summary["top_participant"] == "GERMANY"
        performance = json.loads((out / "analysis" / "participant-performance.json").read_text())
        assert performance["win_rates"]["GERMANY"] == 1.0

        loaded = load_results(out)
        assert loaded.status == ExperimentStatus.COMPLETED
        assert loaded.stats.completed_jobs == 1
        assert loaded.jobs[0].winner == Participant.GERMANY

    def test_load_results_missing(self, temp_dir: Path) -> None:
        with pytest.raises(ConfigurationError, match="No results.json"):
            _ = load_results(temp_dir)

    def test_load_results_invalid(self, temp_dir: Path) -> None:
        _ = (temp_dir / "results.json").write_text('{"jobs": 3}')

        with pytest.raises(ConfigurationError, match="Cannot read"):
            _ = load_results(temp_dir)

    def test_load_cost_report_missing(self, temp_dir: Path) -> None:
        with pytest.raises(ConfigurationError, match="No cost report for job 'x'"):
            _ = load_cost_report(temp_dir, "x")
