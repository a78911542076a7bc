# Copyright (c) Syntropy Systems
"""conclave data model."""

from .base import ConclaveBaseModel, JSONObject, JSONValue, utcnow
from .experiment import (
    PARTICIPANTS,
    BackendAddress,
    BackendConfig,
    BudgetPolicy,
    ExperimentConfig,
    JobConfig,
    Participant,
    ParticipantAssignment,
    PricingEntry,
    Provider,
    SimTime,
)
from .results import (
    CriticalState,
    EventType,
    ExperimentEvent,
    ExperimentProgress,
    ExperimentResults,
    ExperimentStats,
    ExperimentStatus,
    JobResult,
    JobStatus,
    QualityStats,
    ResumeOptions,
    SnapshotRef,
)
from .usage import (
    BudgetCheck,
    BudgetScope,
    BudgetStatus,
    CostReport,
    ModelUsage,
    ParticipantUsage,
    UsageRecord,
    UsageTotals,
)

__all__ = [
    "PARTICIPANTS",
    "BackendAddress",
    "BackendConfig",
    "BudgetCheck",
    "BudgetPolicy",
    "BudgetScope",
    "BudgetStatus",
    "ConclaveBaseModel",
    "CostReport",
    "CriticalState",
    "EventType",
    "ExperimentConfig",
    "ExperimentEvent",
    "ExperimentProgress",
    "ExperimentResults",
    "ExperimentStats",
    "ExperimentStatus",
    "JSONObject",
    "JSONValue",
    "JobConfig",
    "JobResult",
    "JobStatus",
    "ModelUsage",
    "Participant",
    "ParticipantAssignment",
    "ParticipantUsage",
    "PricingEntry",
    "Provider",
    "QualityStats",
    "ResumeOptions",
    "SimTime",
    "SnapshotRef",
    "UsageRecord",
    "UsageTotals",
    "utcnow",
]
