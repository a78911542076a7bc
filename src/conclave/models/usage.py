# Copyright (c) Syntropy Systems
"""Pydantic models for metered usage and cost reporting."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from .base import ConclaveBaseModel, FrozenModel, utcnow
from .experiment import SimTime


class BudgetStatus(str, Enum):
    """Budget classification for one scope."""

    OK = "OK"
    WARNING = "WARNING"
    EXCEEDED = "EXCEEDED"

    @property
    def rank(self) -> int:
        """Ordering used to detect upward transitions."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    BudgetStatus.OK: 0,
    BudgetStatus.WARNING: 1,
    BudgetStatus.EXCEEDED: 2,
}


class BudgetScope(str, Enum):
    """Scopes a budget ceiling applies to."""

    PARTICIPANT = "participant"
    JOB = "job"


class UsageRecord(FrozenModel):
    """One metered decision call."""

    participant: str
    model: str
    stage: str
    sub_stage: str
    sim_time: Optional[SimTime] = None
    input_units: int = Field(ge=0)
    output_units: int = Field(ge=0)
    cost: float = Field(ge=0)
    timestamp: datetime = Field(default_factory=utcnow)


class BudgetCheck(ConclaveBaseModel):
    """Result of checking both budget scopes for a participant."""

    allowed: bool
    participant_status: BudgetStatus
    job_status: BudgetStatus
    participant_cost: float
    participant_budget: Optional[float] = None
    job_cost: float
    job_budget: Optional[float] = None
    message: Optional[str] = None

    @property
    def exceeded_scope(self) -> BudgetScope | None:
        """The scope that blocks further calls, participant first."""
        if self.participant_status == BudgetStatus.EXCEEDED:
            return BudgetScope.PARTICIPANT
        if self.job_status == BudgetStatus.EXCEEDED:
            return BudgetScope.JOB
        return None


class UsageTotals(ConclaveBaseModel):
    """Summed units, cost and request count."""

    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0
    requests: int = 0

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units

    def add(self, record: UsageRecord) -> None:
        self.input_units += record.input_units
        self.output_units += record.output_units
        self.cost += record.cost
        self.requests += 1


class ParticipantUsage(ConclaveBaseModel):
    """Usage for one participant, broken down by model and stage."""

    participant: str
    totals: UsageTotals = Field(default_factory=UsageTotals)
    by_model: dict[str, UsageTotals] = Field(default_factory=dict)
    by_stage: dict[str, UsageTotals] = Field(default_factory=dict)


class ModelUsage(ConclaveBaseModel):
    """Usage for one model across all participants."""

    model: str
    totals: UsageTotals = Field(default_factory=UsageTotals)
    average_input_units: float = 0.0
    average_output_units: float = 0.0


class ParticipantCost(ConclaveBaseModel):
    participant: str
    cost: float


class ParticipantRequests(ConclaveBaseModel):
    participant: str
    requests: int


class StageCost(ConclaveBaseModel):
    stage: str
    cost: float


class CostReport(ConclaveBaseModel):
    """Everything metered during one job."""

    job_id: str
    totals: UsageTotals = Field(default_factory=UsageTotals)
    by_participant: list[ParticipantUsage] = Field(default_factory=list)
    by_model: list[ModelUsage] = Field(default_factory=list)
    most_expensive_participant: Optional[ParticipantCost] = None
    chattiest_participant: Optional[ParticipantRequests] = None
    most_expensive_stage: Optional[StageCost] = None
