# Copyright (c) Syntropy Systems
"""Expand an experiment description into a concrete job list."""

from __future__ import annotations

from conclave.address import resolve_backend
from conclave.errors import ConfigurationError, DuplicateJobError
from conclave.models.experiment import (
    BackendConfig,
    ExperimentConfig,
    JobConfig,
    ParticipantAssignment,
)


def generate_job_id(experiment_id: str, index: int) -> str:
    """Deterministic id for the index-th (1-based) generated job."""
    return f"{experiment_id}-job-{index}"


class _BackendRegistry:
    """Backend list that refuses to hold the same address twice."""

    def __init__(self, backends: list[BackendConfig]) -> None:
        self.backends: list[BackendConfig] = []
        self._by_id: dict[str, BackendConfig] = {}
        self._by_canonical: dict[str, BackendConfig] = {}
        for backend in backends:
            self.add(backend)

    def add(self, backend: BackendConfig) -> BackendConfig:
        existing = self._by_canonical.get(backend.canonical)
        if existing is not None:
            # Later duplicates stay reachable under their own id.
            self._by_id.setdefault(backend.id, existing)
            return existing
        if backend.id in self._by_id:
            msg = f"Backend id '{backend.id}' is used for two different addresses"
            raise ConfigurationError(msg)
        self.backends.append(backend)
        self._by_id[backend.id] = backend
        self._by_canonical[backend.canonical] = backend
        return backend

    def add_address(self, spec: str) -> BackendConfig:
        return self.add(resolve_backend(spec))

    def require(self, backend_id: str, where: str) -> BackendConfig:
        backend = self._by_id.get(backend_id)
        if backend is None:
            msg = f"Unknown backend '{backend_id}' referenced by {where}"
            raise ConfigurationError(msg)
        return backend


def normalize(config: ExperimentConfig) -> ExperimentConfig:
    """Return a copy of the config with backends resolved and jobs populated.

    The input is left untouched. Raises ConfigurationError (or one of its
    subclasses) when a reference cannot be satisfied.
    """
    registry = _BackendRegistry([backend.model_copy() for backend in config.backends])

    default_id = config.default_backend
    if config.default_address:
        default_id = registry.add_address(config.default_address).id
    elif default_id is None and len(registry.backends) == 1:
        default_id = registry.backends[0].id

    if default_id is None:
        msg = (
            f"Experiment '{config.experiment_id}' has no default backend; "
            "set default_backend or default_address"
        )
        raise ConfigurationError(msg)
    default_id = registry.require(default_id, "the experiment default").id

    if config.jobs:
        jobs = _normalize_jobs(config.jobs, registry, default_id)
        job_count = len(jobs)
    else:
        jobs = [
            JobConfig(
                job_id=generate_job_id(config.experiment_id, i),
                default_backend=default_id,
            )
            for i in range(1, config.job_count + 1)
        ]
        job_count = config.job_count

    return config.model_copy(
        update={
            "backends": registry.backends,
            "default_backend": default_id,
            "default_address": None,
            "jobs": jobs,
            "job_count": job_count,
            "output_dir": config.resolved_output_dir(),
        }
    )


def _normalize_jobs(
    jobs: list[JobConfig],
    registry: _BackendRegistry,
    default_id: str,
) -> list[JobConfig]:
    seen: set[str] = set()
    normalized: list[JobConfig] = []

    for job in jobs:
        if job.job_id in seen:
            msg = f"Duplicate job id '{job.job_id}'"
            raise DuplicateJobError(msg)
        seen.add(job.job_id)

        job_default = default_id
        if job.default_backend is not None:
            job_default = registry.require(job.default_backend, f"job '{job.job_id}'").id

        assignments: list[ParticipantAssignment] = []
        for assignment in job.assignments:
            where = f"job '{job.job_id}' ({assignment.participant.value})"
            if assignment.address:
                backend = registry.add_address(assignment.address)
            else:
                backend = registry.require(assignment.backend or "", where)
            # Inline addresses become references so no key text is persisted.
            assignments.append(
                assignment.model_copy(update={"backend": backend.id, "address": None})
            )

        normalized.append(
            job.model_copy(
                update={"assignments": assignments, "default_backend": job_default}
            )
        )

    return normalized
