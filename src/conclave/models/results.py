# Copyright (c) Syntropy Systems
"""Pydantic models for job results, statistics, events and checkpoints."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from .base import ConclaveBaseModel, FrozenModel, utcnow
from .experiment import ExperimentConfig, Participant, SimTime


class JobStatus(str, Enum):
    """Terminal status of a job."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ExperimentStatus(str, Enum):
    """Overall status of an experiment run."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class EventType(str, Enum):
    """Kinds of experiment events."""

    EXPERIMENT_STARTED = "experiment_started"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    EXPERIMENT_COMPLETED = "experiment_completed"
    EXPERIMENT_ABORTED = "experiment_aborted"


class QualityStats(ConclaveBaseModel):
    """Engine-reported decision quality rates, keyed by model id."""

    invalid_action_rate_by_model: dict[str, float] = Field(default_factory=dict)
    deception_rate_by_model: dict[str, float] = Field(default_factory=dict)


class JobResult(FrozenModel):
    """Terminal record for one job."""

    job_id: str
    experiment_id: str
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    winner: Optional[Participant] = None
    draw: bool = False
    final_time: Optional[SimTime] = None
    final_scores: dict[Participant, int] = Field(default_factory=dict)
    step_count: int = 0
    models_by_participant: dict[Participant, str] = Field(default_factory=dict)
    log_path: str
    snapshots_path: Optional[str] = None
    quality: Optional[QualityStats] = None
    cost_usd: float = 0.0
    status: JobStatus
    error: Optional[str] = None


class ExperimentStats(ConclaveBaseModel):
    """Experiment-wide statistics folded from job results."""

    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    timed_out_jobs: int = 0
    wins_by_participant: dict[Participant, int] = Field(default_factory=dict)
    wins_by_model: dict[str, int] = Field(default_factory=dict)
    draw_count: int = 0
    average_duration_ms: float = 0.0
    average_steps: float = 0.0
    invalid_action_rate_by_model: dict[str, float] = Field(default_factory=dict)
    deception_rate_by_model: dict[str, float] = Field(default_factory=dict)
    average_score_by_participant: dict[Participant, float] = Field(default_factory=dict)


class ExperimentProgress(ConclaveBaseModel):
    """Snapshot of scheduler state at the time of an event."""

    experiment_id: str
    total_jobs: int
    finished_jobs: int
    in_flight_jobs: int
    pending_jobs: int
    active_job_ids: list[str] = Field(default_factory=list)
    estimated_remaining_ms: Optional[float] = None


class ExperimentEvent(FrozenModel):
    """One entry in the experiment event stream."""

    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    experiment_id: str
    job_id: Optional[str] = None
    progress: Optional[ExperimentProgress] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None
    stats: Optional[ExperimentStats] = None


class SnapshotRef(FrozenModel):
    """Pointer to one stored engine checkpoint."""

    job_id: str
    step: int
    sim_time: SimTime
    path: str


class CriticalState(ConclaveBaseModel):
    """Where an interrupted job can be resumed from."""

    experiment_id: str
    job_id: str
    snapshot: SnapshotRef
    resume_time: SimTime


class ResumeOptions(ConclaveBaseModel):
    """How to continue a previously aborted experiment."""

    critical_states: list[CriticalState] = Field(default_factory=list)
    continue_remaining: bool = True


class ExperimentResults(ConclaveBaseModel):
    """Everything known about an experiment run."""

    config: ExperimentConfig
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    jobs: list[JobResult] = Field(default_factory=list)
    stats: ExperimentStats = Field(default_factory=ExperimentStats)
    status: ExperimentStatus = ExperimentStatus.RUNNING
    critical_states: list[CriticalState] = Field(default_factory=list)
