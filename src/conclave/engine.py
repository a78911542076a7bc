# Copyright (c) Syntropy Systems
"""Contract between the orchestrator and a simulation engine.

The orchestrator hands each job a JobContext. The engine drives its phases
through it: ``begin_step``/``end_step`` around every phase, ``decide`` for
every metered decision call, ``checkpoint`` at durable points and ``sleep``
for throttling. Each of these is a point where an abort or a ceiling can stop
the job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from conclave.errors import BudgetExceededError, JobInterrupted, StepLimitReached
from conclave.models.base import utcnow
from conclave.models.usage import BudgetScope

if TYPE_CHECKING:
    import threading
    from pathlib import Path

    from conclave.backends import Decision, DecisionBackend, Message
    from conclave.checkpoint import CheckpointStore
    from conclave.governor import BudgetGovernor
    from conclave.models.base import JSONObject, JSONValue
    from conclave.models.experiment import BackendConfig, JobConfig, Participant, SimTime
    from conclave.models.results import QualityStats, SnapshotRef
    from conclave.models.usage import BudgetCheck

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """What an engine reports when a job reaches its end."""

    winner: Participant | None = None
    draw: bool = False
    final_time: SimTime | None = None
    scores: dict[Participant, int] = field(default_factory=dict)
    quality: QualityStats | None = None


class SimulationEngine(Protocol):
    """Drives one job from start (or from a checkpoint) to its outcome."""

    def drive_job(self, context: JobContext) -> JobOutcome:
        ...

    def resume_job(self, context: JobContext, state: JSONObject) -> JobOutcome:
        ...


class JobContext:
    """Everything an engine may touch while driving one job."""

    job: JobConfig
    experiment_id: str
    backends: dict[Participant, BackendConfig]
    overrides: dict[Participant, JSONObject]
    governor: BudgetGovernor
    max_steps: int
    phase_delay_ms: int
    negotiation_minutes: float | None
    log_path: Path
    step_count: int
    sim_time: SimTime | None
    last_checkpoint: SnapshotRef | None
    _clients: dict[Participant, DecisionBackend]
    _cancel: threading.Event
    _checkpoints: CheckpointStore | None

    def __init__(  # noqa: PLR0913
        self,
        job: JobConfig,
        experiment_id: str,
        backends: dict[Participant, BackendConfig],
        clients: dict[Participant, DecisionBackend],
        governor: BudgetGovernor,
        cancel: threading.Event,
        log_path: Path,
        *,
        overrides: dict[Participant, JSONObject] | None = None,
        max_steps: int = 0,
        checkpoints: CheckpointStore | None = None,
        phase_delay_ms: int = 0,
        negotiation_minutes: float | None = None,
    ) -> None:
        self.job = job
        self.experiment_id = experiment_id
        self.backends = backends
        self.overrides = overrides or {}
        self.governor = governor
        self.max_steps = max_steps
        self.phase_delay_ms = phase_delay_ms
        self.negotiation_minutes = negotiation_minutes
        self.log_path = log_path
        self.step_count = 0
        self.sim_time = None
        self.last_checkpoint = None
        self._clients = clients
        self._cancel = cancel
        self._checkpoints = checkpoints

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def seed(self) -> int | None:
        return self.job.seed

    @property
    def cancelled(self) -> bool:
        """Whether the experiment has been aborted."""
        return self._cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel.is_set():
            msg = "Job interrupted: experiment aborted"
            raise JobInterrupted(msg)

    def begin_step(self, sim_time: SimTime) -> None:
        """Enter a new phase. Raises if the job must stop instead."""
        self.raise_if_cancelled()
        if self.max_steps > 0 and self.step_count >= self.max_steps:
            msg = f"Step limit reached ({self.max_steps} steps)"
            raise StepLimitReached(msg)
        self.sim_time = sim_time

    def end_step(self) -> None:
        """Mark the current phase as finished."""
        self.step_count += 1

    def restore(self, ref: SnapshotRef) -> None:
        """Position the context at a checkpoint before resuming."""
        self.step_count = ref.step
        self.sim_time = ref.sim_time
        self.last_checkpoint = ref
        self.log("resumed", step=ref.step, sim_time=ref.sim_time.label())

    def decide(
        self,
        participant: Participant,
        messages: list[Message],
        *,
        stage: str,
        sub_stage: str,
    ) -> Decision:
        """Make one metered decision call for a participant."""
        self.raise_if_cancelled()
        key = participant.value
        self._enforce(self.governor.check_budget(key))

        backend = self.backends[participant]
        decision = self._clients[participant].complete(
            messages,
            temperature=backend.temperature,
            max_tokens=backend.max_tokens,
        )
        record = self.governor.record(
            key,
            decision.model,
            stage,
            sub_stage,
            self.sim_time,
            decision.input_units,
            decision.output_units,
        )
        self.log(
            "decision",
            participant=key,
            model=decision.model,
            stage=stage,
            sub_stage=sub_stage,
            input_units=record.input_units,
            output_units=record.output_units,
            cost=record.cost,
        )

        self._enforce(self.governor.check_budget(key))
        return decision

    def checkpoint(self, sim_time: SimTime, state: JSONObject) -> SnapshotRef | None:
        """Store a durable checkpoint. Returns None when checkpoints are off."""
        if self._checkpoints is None:
            return None
        ref = self._checkpoints.save(self.job_id, self.step_count, sim_time, state)
        self.last_checkpoint = ref
        return ref

    def sleep(self, seconds: float) -> None:
        """Wait, waking early if the experiment is aborted."""
        if seconds > 0 and self._cancel.wait(timeout=seconds):
            self.raise_if_cancelled()

    def log(self, event: str, **data: JSONValue) -> None:
        """Append an entry to the job's JSONL log."""
        entry: dict[str, JSONValue] = {
            "_timestamp": utcnow().isoformat(),
            "event": event,
            "job_id": self.job_id,
        }
        if self.sim_time is not None:
            entry["sim_time"] = self.sim_time.label()
        entry.update(data)
        with self.log_path.open("a") as f:
            _ = f.write(json.dumps(entry) + "\n")

    def _enforce(self, check: BudgetCheck) -> None:
        if check.allowed:
            return
        scope = check.exceeded_scope or BudgetScope.JOB
        message = check.message or f"{scope.value} budget exceeded"
        self.log("budget_exceeded", scope=scope.value, message=message)
        raise BudgetExceededError(scope, message)
