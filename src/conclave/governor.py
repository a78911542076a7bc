# Copyright (c) Syntropy Systems
"""Per-job usage metering, pricing and budget enforcement."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

from conclave.models.experiment import BudgetPolicy, PricingEntry
from conclave.models.usage import (
    BudgetCheck,
    BudgetScope,
    BudgetStatus,
    CostReport,
    ModelUsage,
    ParticipantCost,
    ParticipantRequests,
    ParticipantUsage,
    StageCost,
    UsageRecord,
    UsageTotals,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from conclave.models.experiment import SimTime

logger = logging.getLogger(__name__)

BudgetCallback = Callable[[BudgetScope, str, BudgetStatus, float], None]

# USD per million units
DEFAULT_PRICING: tuple[PricingEntry, ...] = (
    PricingEntry(key="claude-3-opus", input_per_million=15, output_per_million=75),
    PricingEntry(key="claude-3-sonnet", input_per_million=3, output_per_million=15),
    PricingEntry(key="claude-3-haiku", input_per_million=0.25, output_per_million=1.25),
    PricingEntry(key="claude-3.5-sonnet", input_per_million=3, output_per_million=15),
    PricingEntry(key="claude-3.5-haiku", input_per_million=0.8, output_per_million=4),
    PricingEntry(key="claude-sonnet-4", input_per_million=3, output_per_million=15),
    PricingEntry(key="claude-opus-4", input_per_million=15, output_per_million=75),
    PricingEntry(key="gpt-4o", input_per_million=2.5, output_per_million=10),
    PricingEntry(key="gpt-4o-mini", input_per_million=0.15, output_per_million=0.6),
    PricingEntry(key="gpt-4-turbo", input_per_million=10, output_per_million=30),
    PricingEntry(key="meta-llama/llama-3.1-70b-instruct", input_per_million=0.52, output_per_million=0.75),
    PricingEntry(key="mistralai/mistral-large", input_per_million=2, output_per_million=6),
)

DEFAULT_WARNING_THRESHOLD = 0.8


class PricingTable:
    """Looks up prices by case-insensitive family-key containment.

    Custom entries are consulted before the defaults and replace a default
    with the same key. When several keys occur in a model id the longest
    one wins; equal lengths go to the entry listed first.
    """

    _entries: list[PricingEntry]

    def __init__(self, custom: Iterable[PricingEntry] | None = None) -> None:
        entries: dict[str, PricingEntry] = {}
        for entry in custom or ():
            entries[entry.key.lower()] = entry
        for entry in DEFAULT_PRICING:
            entries.setdefault(entry.key.lower(), entry)
        self._entries = list(entries.values())

    def lookup(self, model: str) -> PricingEntry | None:
        """Find the pricing entry for a model id, if any."""
        lower = model.lower()
        best: PricingEntry | None = None
        for entry in self._entries:
            key = entry.key.lower()
            if key in lower and (best is None or len(key) > len(best.key)):
                best = entry
        return best

    def price(self, model: str, input_units: int, output_units: int) -> float:
        """Cost in USD; unknown models are free."""
        entry = self.lookup(model)
        if entry is None:
            return 0.0
        return (
            input_units / 1_000_000 * entry.input_per_million
            + output_units / 1_000_000 * entry.output_per_million
        )


def classify(cost: float, ceiling: float | None, threshold: float) -> BudgetStatus:
    """Classify a running total against an optional ceiling."""
    if ceiling is None:
        return BudgetStatus.OK
    if cost >= ceiling:
        return BudgetStatus.EXCEEDED
    if cost >= ceiling * threshold:
        return BudgetStatus.WARNING
    return BudgetStatus.OK


class BudgetGovernor:
    """Meters one job's decision calls and enforces its cost ceilings.

    Every call is recorded, even past a ceiling. Callbacks registered with
    on_budget_status fire once each time a participant or the job moves up
    to WARNING or EXCEEDED.
    """

    job_id: str
    policy: BudgetPolicy
    pricing: PricingTable
    _records: list[UsageRecord]
    _participant_costs: dict[str, float]
    _job_cost: float
    _reported: dict[tuple[BudgetScope, str], BudgetStatus]
    _callbacks: list[BudgetCallback]
    _lock: threading.Lock

    def __init__(
        self,
        job_id: str,
        policy: BudgetPolicy | None = None,
        custom_pricing: Iterable[PricingEntry] | None = None,
    ) -> None:
        self.job_id = job_id
        self.policy = policy or BudgetPolicy()
        self.pricing = PricingTable(custom_pricing)
        self._records = []
        self._participant_costs = {}
        self._job_cost = 0.0
        self._reported = {}
        self._callbacks = []
        self._lock = threading.Lock()

    def on_budget_status(self, callback: BudgetCallback) -> None:
        """Register a callback for upward budget transitions."""
        self._callbacks.append(callback)

    def price(self, model: str, input_units: int, output_units: int) -> float:
        """Cost in USD for a single call."""
        return self.pricing.price(model, input_units, output_units)

    def record(
        self,
        participant: str,
        model: str,
        stage: str,
        sub_stage: str,
        sim_time: SimTime | None,
        input_units: int,
        output_units: int,
    ) -> UsageRecord:
        """Record one metered call and update both running totals."""
        record = UsageRecord(
            participant=participant,
            model=model,
            stage=stage,
            sub_stage=sub_stage,
            sim_time=sim_time,
            input_units=input_units,
            output_units=output_units,
            cost=self.price(model, input_units, output_units),
        )

        with self._lock:
            self._records.append(record)
            participant_cost = self._participant_costs.get(participant, 0.0) + record.cost
            self._participant_costs[participant] = participant_cost
            self._job_cost += record.cost
            job_cost = self._job_cost
            transitions = [
                self._transition(
                    BudgetScope.PARTICIPANT,
                    participant,
                    classify(participant_cost, self.policy.max_participant_cost, self._threshold),
                    participant_cost,
                ),
                self._transition(
                    BudgetScope.JOB,
                    self.job_id,
                    classify(job_cost, self.policy.max_job_cost, self._threshold),
                    job_cost,
                ),
            ]

        for transition in transitions:
            if transition is not None:
                self._notify(*transition)

        return record

    def check_budget(self, participant: str) -> BudgetCheck:
        """Check whether another call for this participant is allowed."""
        with self._lock:
            participant_cost = self._participant_costs.get(participant, 0.0)
            job_cost = self._job_cost

        participant_budget = self.policy.max_participant_cost
        job_budget = self.policy.max_job_cost
        participant_status = classify(participant_cost, participant_budget, self._threshold)
        job_status = classify(job_cost, job_budget, self._threshold)

        message: str | None = None
        if participant_status == BudgetStatus.EXCEEDED:
            message = (
                f"Participant {participant} exceeded budget: "
                f"${participant_cost:.4f} / ${participant_budget:.4f}"
            )
        elif job_status == BudgetStatus.EXCEEDED:
            message = f"Job {self.job_id} exceeded budget: ${job_cost:.4f} / ${job_budget:.4f}"
        elif participant_status == BudgetStatus.WARNING:
            message = (
                f"Participant {participant} approaching budget: "
                f"${participant_cost:.4f} / ${participant_budget:.4f}"
            )
        elif job_status == BudgetStatus.WARNING:
            message = f"Job {self.job_id} approaching budget: ${job_cost:.4f} / ${job_budget:.4f}"

        return BudgetCheck(
            allowed=BudgetStatus.EXCEEDED not in (participant_status, job_status),
            participant_status=participant_status,
            job_status=job_status,
            participant_cost=participant_cost,
            participant_budget=participant_budget,
            job_cost=job_cost,
            job_budget=job_budget,
            message=message,
        )

    def participant_cost(self, participant: str) -> float:
        with self._lock:
            return self._participant_costs.get(participant, 0.0)

    def job_cost(self) -> float:
        with self._lock:
            return self._job_cost

    def records(self) -> list[UsageRecord]:
        """Copy of all records in the order they were made."""
        with self._lock:
            return list(self._records)

    def report(self) -> CostReport:
        """Fold all records of this job into a cost report."""
        return build_cost_report(self.job_id, self.records())

    @property
    def _threshold(self) -> float:
        return self.policy.warning_threshold

    def _transition(
        self,
        scope: BudgetScope,
        entity: str,
        status: BudgetStatus,
        cost: float,
    ) -> tuple[BudgetScope, str, BudgetStatus, float] | None:
        # Caller holds the lock.
        previous = self._reported.get((scope, entity), BudgetStatus.OK)
        if status.rank <= previous.rank:
            return None
        self._reported[(scope, entity)] = status
        return scope, entity, status, cost

    def _notify(
        self,
        scope: BudgetScope,
        entity: str,
        status: BudgetStatus,
        cost: float,
    ) -> None:
        logger.warning(
            "Budget %s for %s %s in job %s ($%.4f)",
            status.value,
            scope.value,
            entity,
            self.job_id,
            cost,
        )
        for callback in self._callbacks:
            callback(scope, entity, status, cost)


def build_cost_report(job_id: str, records: list[UsageRecord]) -> CostReport:
    """Aggregate usage records into a CostReport.

    Ties for the superlatives go to whichever participant or stage appears
    first in the records.
    """
    report = CostReport(job_id=job_id)
    participants: dict[str, ParticipantUsage] = {}
    models: dict[str, ModelUsage] = {}
    stage_costs: dict[str, float] = {}

    for record in records:
        report.totals.add(record)

        usage = participants.setdefault(
            record.participant, ParticipantUsage(participant=record.participant)
        )
        usage.totals.add(record)
        usage.by_model.setdefault(record.model, UsageTotals()).add(record)
        usage.by_stage.setdefault(record.stage, UsageTotals()).add(record)

        models.setdefault(record.model, ModelUsage(model=record.model)).totals.add(record)
        stage_costs[record.stage] = stage_costs.get(record.stage, 0.0) + record.cost

    for model_usage in models.values():
        count = model_usage.totals.requests
        model_usage.average_input_units = model_usage.totals.input_units / count
        model_usage.average_output_units = model_usage.totals.output_units / count

    report.by_participant = list(participants.values())
    report.by_model = list(models.values())

    if participants:
        priciest = report.by_participant[0]
        chattiest = report.by_participant[0]
        for usage in report.by_participant[1:]:
            if usage.totals.cost > priciest.totals.cost:
                priciest = usage
            if usage.totals.requests > chattiest.totals.requests:
                chattiest = usage
        report.most_expensive_participant = ParticipantCost(
            participant=priciest.participant, cost=priciest.totals.cost
        )
        report.chattiest_participant = ParticipantRequests(
            participant=chattiest.participant, requests=chattiest.totals.requests
        )

    top_stage: StageCost | None = None
    for stage, cost in stage_costs.items():
        if top_stage is None or cost > top_stage.cost:
            top_stage = StageCost(stage=stage, cost=cost)
    report.most_expensive_stage = top_stage

    return report


def format_cost_report(report: CostReport) -> str:
    """Render a cost report as plain text."""
    rule = "=" * 70
    thin = "-" * 70
    totals = report.totals
    lines = [
        "",
        rule,
        "TOKEN USAGE & COST REPORT",
        rule,
        "",
        f"Job: {report.job_id}",
        f"Total Requests: {totals.requests}",
        (
            f"Total Units: {totals.total_units:,} "
            f"({totals.input_units:,} in / {totals.output_units:,} out)"
        ),
        f"Total Cost: ${totals.cost:.4f}",
        "",
    ]

    if report.most_expensive_participant:
        top = report.most_expensive_participant
        lines.append(f"Most Expensive Participant: {top.participant} (${top.cost:.4f})")
    if report.chattiest_participant:
        chatty = report.chattiest_participant
        lines.append(f"Chattiest Participant: {chatty.participant} ({chatty.requests} requests)")
    if report.most_expensive_stage:
        stage = report.most_expensive_stage
        lines.append(f"Most Expensive Stage: {stage.stage} (${stage.cost:.4f})")

    if report.by_model:
        lines.extend(["", thin, "BY MODEL", thin])
        for model in sorted(report.by_model, key=lambda m: m.totals.cost, reverse=True):
            lines.append(f"  {model.model}")
            lines.append(
                f"    Requests: {model.totals.requests} | Units: {model.totals.total_units:,} "
                f"(avg {round(model.average_input_units)} in / "
                f"{round(model.average_output_units)} out)"
            )
            lines.append(f"    Cost: ${model.totals.cost:.4f}")

    if report.by_participant:
        lines.extend(["", thin, "BY PARTICIPANT", thin])
        for usage in sorted(report.by_participant, key=lambda p: p.totals.cost, reverse=True):
            lines.append(f"  {usage.participant}")
            lines.append(
                f"    Requests: {usage.totals.requests} | Units: {usage.totals.total_units:,} "
                f"| Cost: ${usage.totals.cost:.4f}"
            )
            for stage, data in usage.by_stage.items():
                lines.append(
                    f"    {stage}: {data.requests} req, {data.total_units:,} units, "
                    f"${data.cost:.4f}"
                )

    lines.extend(["", rule])
    return "\n".join(lines)
