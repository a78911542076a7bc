# Copyright (c) Syntropy Systems
"""Runs an experiment's jobs on a bounded pool of worker threads.

All mutable scheduler state (pending queue, in-flight set, collected
results) lives on the Orchestrator instance and is guarded by one
re-entrant lock, so several experiments can run in one process. Events are
emitted while holding that lock, which gives subscribers a single ordered
stream even though jobs finish on different threads.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from conclave import aggregate
from conclave.backends import create_backend
from conclave.checkpoint import CheckpointStore
from conclave.credentials import EnvironmentCredentials, validate_credentials
from conclave.engine import JobContext
from conclave.engines.mock import MockEngine
from conclave.errors import (
    ArtifactWriteError,
    BudgetExceededError,
    ConclaveError,
    ConfigurationError,
    JobInterrupted,
    StepLimitReached,
)
from conclave.governor import BudgetGovernor
from conclave.models.base import utcnow
from conclave.models.experiment import PARTICIPANTS
from conclave.models.results import (
    CriticalState,
    EventType,
    ExperimentEvent,
    ExperimentProgress,
    ExperimentResults,
    ExperimentStatus,
    JobResult,
    JobStatus,
    ResumeOptions,
)
from conclave.normalize import normalize

if TYPE_CHECKING:
    from pathlib import Path

    from conclave.backends import BackendFactory, DecisionBackend
    from conclave.credentials import CredentialResolver
    from conclave.engine import JobOutcome, SimulationEngine
    from conclave.models.base import JSONObject
    from conclave.models.experiment import BackendConfig, ExperimentConfig, JobConfig, Participant
    from conclave.models.results import SnapshotRef
    from conclave.models.usage import BudgetScope, BudgetStatus

logger = logging.getLogger(__name__)

EventCallback = Callable[[ExperimentEvent], None]


@dataclass
class _WorkItem:
    job: JobConfig
    snapshot: SnapshotRef | None = None


@dataclass
class _JobRun:
    result: JobResult
    critical_state: CriticalState | None = None
    interrupted: bool = False


class Orchestrator:
    """Schedules, drives and collects the jobs of one experiment.

    Example::

        orchestrator = Orchestrator(config)
        unsubscribe = orchestrator.on_event(print)
        results = orchestrator.run()
    """

    config: ExperimentConfig
    engine: SimulationEngine
    output_dir: Path
    _credentials: CredentialResolver
    _backend_factory: BackendFactory
    _subscribers: list[EventCallback]
    _lock: threading.RLock
    _cancel: threading.Event
    _pending: deque[_WorkItem]
    _active: list[str]
    _durations: list[float]
    _results: ExperimentResults
    _resume_from: dict[str, SnapshotRef]
    _continue_remaining: bool
    _running: bool
    _checkpoints: CheckpointStore

    def __init__(
        self,
        config: ExperimentConfig,
        engine: SimulationEngine | None = None,
        *,
        credentials: CredentialResolver | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self.config = normalize(config)
        self.engine = engine or MockEngine()
        self.output_dir = self.config.resolved_output_dir()
        self._credentials = credentials or EnvironmentCredentials()
        self._backend_factory = backend_factory or create_backend
        self._subscribers = []
        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._pending = deque()
        self._active = []
        self._durations = []
        self._results = ExperimentResults(config=self.config)
        self._resume_from = {}
        self._continue_remaining = True
        self._running = False
        self._checkpoints = CheckpointStore(self.output_dir)

        # Fail fast on references no job could satisfy
        for job in self.config.jobs or []:
            _ = self._backends_for(job)

    @classmethod
    def resume(
        cls,
        output_dir: Path,
        options: ResumeOptions | None = None,
        engine: SimulationEngine | None = None,
        *,
        credentials: CredentialResolver | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> Orchestrator:
        """Prepare an orchestrator that continues an aborted experiment.

        Jobs with a critical state are re-entered from their checkpoint.
        With ``continue_remaining`` set, jobs that never produced a result
        run from the start. Call ``run()`` on the returned instance.
        """
        previous = aggregate.load_results(output_dir)
        if options is None:
            options = ResumeOptions(critical_states=previous.critical_states)

        config = previous.config.model_copy(update={"output_dir": output_dir})
        orchestrator = cls(
            config,
            engine,
            credentials=credentials,
            backend_factory=backend_factory,
        )

        job_ids = {job.job_id for job in orchestrator.config.jobs or []}
        resume_from: dict[str, SnapshotRef] = {}
        for state in options.critical_states:
            if state.job_id not in job_ids:
                msg = f"Critical state refers to unknown job '{state.job_id}'"
                raise ConfigurationError(msg)
            resume_from[state.job_id] = state.snapshot

        orchestrator._resume_from = resume_from
        orchestrator._continue_remaining = options.continue_remaining
        orchestrator._results = ExperimentResults(
            config=orchestrator.config,
            jobs=[job for job in previous.jobs if job.job_id not in resume_from],
        )
        logger.info(
            "Resuming %s: %d job(s) from checkpoints, %d already finished",
            orchestrator.config.experiment_id,
            len(resume_from),
            len(orchestrator._results.jobs),
        )
        return orchestrator

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to experiment events. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def abort(self) -> None:
        """Stop starting jobs and signal in-flight jobs to stop."""
        if not self._cancel.is_set():
            logger.info("Aborting experiment %s", self.config.experiment_id)
        self._cancel.set()

    def get_is_running(self) -> bool:
        with self._lock:
            return self._running

    def get_results(self) -> ExperimentResults:
        """Snapshot of the results collected so far, with fresh stats."""
        with self._lock:
            results = self._results.model_copy(deep=True)
        results.stats = aggregate.fold(results.jobs)
        return results

    def run(self) -> ExperimentResults:
        """Run every planned job and return the final results.

        Raises ConfigurationError before any job starts when the
        experiment cannot run, and ArtifactWriteError after the terminal
        event when final artifacts cannot be written.
        """
        with self._lock:
            if self._running:
                msg = f"Experiment {self.config.experiment_id} is already running"
                raise ConclaveError(msg)
            self._running = True

        try:
            validate_credentials(self.config.backends, self._credentials)
            aggregate.write_config(self.output_dir, self.config)

            with self._lock:
                self._pending = deque(self._plan())
                self._results.status = ExperimentStatus.RUNNING
                self._results.started_at = utcnow()
                self._emit(EventType.EXPERIMENT_STARTED)

            workers = [
                threading.Thread(
                    target=self._worker,
                    name=f"conclave-worker-{i}",
                    daemon=True,
                )
                for i in range(min(self.config.concurrency, len(self._pending)))
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

            return self._finish()
        finally:
            with self._lock:
                self._running = False

    def _plan(self) -> list[_WorkItem]:
        finished = {result.job_id for result in self._results.jobs}
        items: list[_WorkItem] = []
        for job in self.config.jobs or []:
            snapshot = self._resume_from.get(job.job_id)
            if snapshot is not None:
                items.append(_WorkItem(job, snapshot))
            elif job.job_id not in finished and self._continue_remaining:
                items.append(_WorkItem(job))
        return items

    def _finish(self) -> ExperimentResults:
        with self._lock:
            aborted = self._cancel.is_set()
            results = self._results
            results.completed_at = utcnow()
            results.duration_ms = (results.completed_at - results.started_at).total_seconds() * 1000
            results.status = ExperimentStatus.ABORTED if aborted else ExperimentStatus.COMPLETED
            results.stats = aggregate.fold(results.jobs)
            self._emit(
                EventType.EXPERIMENT_ABORTED if aborted else EventType.EXPERIMENT_COMPLETED,
                stats=results.stats,
            )
            final = results.model_copy(deep=True)

        logger.info(
            "Experiment %s %s: %d completed, %d failed, %d timed out",
            self.config.experiment_id,
            final.status.value,
            final.stats.completed_jobs,
            final.stats.failed_jobs,
            final.stats.timed_out_jobs,
        )
        aggregate.persist(self.output_dir, self.config, final, final.stats)
        return final

    def _worker(self) -> None:
        while True:
            with self._lock:
                if self._cancel.is_set() or not self._pending:
                    return
                item = self._pending.popleft()
                job_id = item.job.job_id
                self._active.append(job_id)
                self._emit(EventType.JOB_STARTED, job_id=job_id)

            run: _JobRun | None = None
            try:
                run = self._execute(item)
            except Exception as e:
                logger.exception("Job %s could not be set up", job_id)
                run = self._setup_failure(item.job, e)
            finally:
                self._record_run(job_id, run)

    def _record_run(self, job_id: str, run: _JobRun | None) -> None:
        with self._lock:
            self._active.remove(job_id)
            if run is None:
                return
            if run.interrupted:
                if run.critical_state is not None:
                    self._results.critical_states.append(run.critical_state)
            else:
                self._results.jobs.append(run.result)
                if run.result.status == JobStatus.COMPLETED:
                    self._durations.append(run.result.duration_ms)
            self._emit(
                EventType.JOB_COMPLETED
                if run.result.status == JobStatus.COMPLETED
                else EventType.JOB_FAILED,
                job_id=job_id,
                result=run.result,
                error=run.result.error,
            )
            try:
                aggregate.write_results(self.output_dir, self._results)
            except ArtifactWriteError as e:
                logger.warning("Could not save intermediate results: %s", e)

    def _setup_failure(self, job: JobConfig, error: Exception) -> _JobRun:
        now = utcnow()
        log_path = aggregate.job_dir(self.output_dir, job.job_id) / f"{job.job_id}.jsonl"
        result = JobResult(
            job_id=job.job_id,
            experiment_id=self.config.experiment_id,
            started_at=now,
            completed_at=now,
            duration_ms=0.0,
            log_path=str(log_path),
            status=JobStatus.FAILED,
            error=str(error) or type(error).__name__,
        )
        return _JobRun(result=result)

    def _execute(self, item: _WorkItem) -> _JobRun:
        job = item.job
        started_at = utcnow()
        start = time.monotonic()
        log_path = aggregate.job_dir(self.output_dir, job.job_id) / f"{job.job_id}.jsonl"
        log_path.parent.mkdir(parents=True, exist_ok=True)

        backends = self._backends_for(job)
        governor = BudgetGovernor(job.job_id, self.config.budget, self.config.pricing)
        clients: dict[str, DecisionBackend] = {}
        participant_clients: dict[Participant, DecisionBackend] = {}
        context = JobContext(
            job,
            self.config.experiment_id,
            backends,
            participant_clients,
            governor,
            self._cancel,
            log_path,
            overrides=self._overrides_for(job),
            max_steps=self.config.max_steps_per_job,
            checkpoints=self._checkpoints if self.config.save_snapshots else None,
            phase_delay_ms=self.config.phase_delay_ms,
            negotiation_minutes=self.config.negotiation_minutes,
        )

        def on_budget_status(
            scope: BudgetScope, entity: str, status: BudgetStatus, cost: float
        ) -> None:
            context.log(
                "budget_status", scope=scope.value, entity=entity, status=status.value, cost=cost
            )

        governor.on_budget_status(on_budget_status)

        outcome: JobOutcome | None = None
        status = JobStatus.COMPLETED
        error: str | None = None
        interrupted = False
        logger.info("Starting job %s", job.job_id)

        try:
            participant_clients.update(self._clients_for(backends, clients))
            if item.snapshot is not None:
                state = self._checkpoints.load(item.snapshot)
                context.restore(item.snapshot)
                outcome = self.engine.resume_job(context, state)
            else:
                outcome = self.engine.drive_job(context)
        except StepLimitReached as e:
            status = JobStatus.TIMEOUT
            error = str(e)
        except JobInterrupted as e:
            status = JobStatus.FAILED
            error = str(e)
            interrupted = True
        except BudgetExceededError as e:
            status = JobStatus.FAILED
            error = f"Budget exceeded ({e.scope.value}): {e}"
        except Exception as e:
            logger.exception("Job %s failed", job.job_id)
            status = JobStatus.FAILED
            error = str(e) or type(e).__name__
        finally:
            for client in clients.values():
                client.close()

        if status != JobStatus.COMPLETED:
            logger.warning("Job %s %s: %s", job.job_id, status.value, error)

        try:
            aggregate.write_cost_report(self.output_dir, governor.report())
        except ArtifactWriteError as e:
            logger.warning("Could not save cost report for %s: %s", job.job_id, e)

        completed_at = utcnow()
        decided = outcome if status == JobStatus.COMPLETED else None
        result = JobResult(
            job_id=job.job_id,
            experiment_id=self.config.experiment_id,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=(time.monotonic() - start) * 1000,
            winner=decided.winner if decided else None,
            draw=decided.draw if decided else False,
            final_time=decided.final_time if decided else context.sim_time,
            final_scores=decided.scores if decided else {},
            step_count=context.step_count,
            models_by_participant={p: backend.model for p, backend in backends.items()},
            log_path=str(log_path),
            snapshots_path=(
                str(self._checkpoints.snapshots_dir(job.job_id))
                if self.config.save_snapshots
                else None
            ),
            quality=decided.quality if decided else None,
            cost_usd=governor.job_cost(),
            status=status,
            error=error,
        )

        critical_state: CriticalState | None = None
        if interrupted and context.last_checkpoint is not None:
            snapshot = context.last_checkpoint
            critical_state = CriticalState(
                experiment_id=self.config.experiment_id,
                job_id=job.job_id,
                snapshot=snapshot,
                resume_time=snapshot.sim_time,
            )

        return _JobRun(result=result, critical_state=critical_state, interrupted=interrupted)

    def _backends_for(self, job: JobConfig) -> dict[Participant, BackendConfig]:
        backends: dict[Participant, BackendConfig] = {}
        for participant in PARTICIPANTS:
            assignment = job.assignment_for(participant)
            if assignment is not None and assignment.backend:
                backend_id = assignment.backend
            else:
                backend_id = job.default_backend or self.config.default_backend or ""
            backend = self.config.get_backend(backend_id)
            if backend is None:
                msg = (
                    f"Unknown backend '{backend_id}' for {participant.value} "
                    f"in job '{job.job_id}'"
                )
                raise ConfigurationError(msg)
            backends[participant] = backend
        return backends

    def _overrides_for(self, job: JobConfig) -> dict[Participant, JSONObject]:
        return {a.participant: a.overrides for a in job.assignments if a.overrides}

    def _clients_for(
        self,
        backends: dict[Participant, BackendConfig],
        clients: dict[str, DecisionBackend],
    ) -> dict[Participant, DecisionBackend]:
        # One client per distinct backend within a job
        by_participant: dict[Participant, DecisionBackend] = {}
        for participant, backend in backends.items():
            if backend.id not in clients:
                clients[backend.id] = self._backend_factory(backend, self._credentials)
            by_participant[participant] = clients[backend.id]
        return by_participant

    def _progress(self) -> ExperimentProgress:
        # Caller holds the lock.
        pending = len(self._pending)
        in_flight = len(self._active)
        remaining: float | None = None
        if self._durations:
            average = sum(self._durations) / len(self._durations)
            remaining = average * (pending + in_flight) / self.config.concurrency
        return ExperimentProgress(
            experiment_id=self.config.experiment_id,
            total_jobs=self.config.job_count,
            finished_jobs=len(self._results.jobs),
            in_flight_jobs=in_flight,
            pending_jobs=pending,
            active_job_ids=list(self._active),
            estimated_remaining_ms=remaining,
        )

    def _emit(self, event_type: EventType, **payload: object) -> None:
        # Caller holds the lock.
        event = ExperimentEvent.model_validate(
            {
                "type": event_type,
                "experiment_id": self.config.experiment_id,
                "progress": self._progress(),
                **payload,
            }
        )
        logger.debug("Event %s %s", event.type.value, event.job_id or "")
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.type.value)
