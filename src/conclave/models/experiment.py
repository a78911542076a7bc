# Copyright (c) Syntropy Systems
"""Pydantic models describing an experiment and its jobs."""

from __future__ import annotations

import hashlib
from enum import Enum
from pathlib import Path
from typing import Optional, cast

from pydantic import Field, SecretStr, field_serializer, model_validator
from typing_extensions import Self

from .base import ConclaveBaseModel, FrozenModel, JSONObject


class Participant(str, Enum):
    """The fixed set of roles taking part in every job."""

    ENGLAND = "ENGLAND"
    FRANCE = "FRANCE"
    GERMANY = "GERMANY"
    ITALY = "ITALY"
    AUSTRIA = "AUSTRIA"
    RUSSIA = "RUSSIA"
    TURKEY = "TURKEY"


PARTICIPANTS: tuple[Participant, ...] = tuple(Participant)


class Provider(str, Enum):
    """Decision backend providers."""

    MOCK = "mock"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    CUSTOM = "custom"


class SimTime(FrozenModel):
    """Simulated-time coordinates of a job."""

    year: int
    season: str
    phase: str

    def label(self) -> str:
        """Short human-readable form, e.g. ``1901-SPRING-MOVEMENT``."""
        return f"{self.year}-{self.season}-{self.phase}"


class BackendAddress(ConclaveBaseModel):
    """A resolved decision backend: provider, model and optional endpoint."""

    provider: Provider
    model: str = Field(min_length=1)
    base_url: Optional[str] = None
    api_key: Optional[SecretStr] = None

    @field_serializer("api_key")
    def _drop_api_key(self, value: Optional[SecretStr]) -> None:
        # Inline keys never reach disk; resumed runs go through the resolver.
        return None

    @property
    def canonical(self) -> str:
        """Deduplication key for this address.

        Inline keys contribute a short fingerprint instead of the secret.
        """
        text = f"{self.provider.value}:{self.model}"
        if self.base_url:
            text += f"@{self.base_url}"
        if self.api_key is not None:
            secret = self.api_key.get_secret_value().encode()
            text += "#" + hashlib.sha256(secret).hexdigest()[:8]
        return text


class BackendConfig(BackendAddress):
    """A backend entry in the experiment's backend list."""

    id: str = ""
    credential_ref: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 2048

    @model_validator(mode="before")
    @classmethod
    def _expand_address(cls, data: object) -> object:
        if not isinstance(data, dict) or "address" not in data:
            return data
        from conclave.address import resolve  # noqa: PLC0415

        values = dict(cast("dict[str, object]", data))
        resolved = resolve(cast("str", values.pop("address")))
        for key in ("provider", "model", "base_url", "api_key"):
            if values.get(key) is None:
                values[key] = getattr(resolved, key)
        return values

    @model_validator(mode="after")
    def _default_id(self) -> Self:
        if not self.id:
            self.id = self.canonical
        return self


class ParticipantAssignment(ConclaveBaseModel):
    """Maps one participant to a backend reference or an inline address."""

    participant: Participant
    backend: Optional[str] = None
    address: Optional[str] = None
    overrides: JSONObject = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_target(self) -> Self:
        if not self.backend and not self.address:
            msg = f"Assignment for {self.participant.value} needs 'backend' or 'address'"
            raise ValueError(msg)
        return self


class JobConfig(ConclaveBaseModel):
    """One schedulable simulation job."""

    job_id: str = Field(min_length=1)
    assignments: list[ParticipantAssignment] = Field(default_factory=list)
    default_backend: Optional[str] = None
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _unique_participants(self) -> Self:
        seen: set[Participant] = set()
        for assignment in self.assignments:
            if assignment.participant in seen:
                msg = (
                    f"Job '{self.job_id}' assigns {assignment.participant.value} "
                    "more than once"
                )
                raise ValueError(msg)
            seen.add(assignment.participant)
        return self

    def assignment_for(self, participant: Participant) -> ParticipantAssignment | None:
        """Return the assignment for a participant, if any."""
        for assignment in self.assignments:
            if assignment.participant == participant:
                return assignment
        return None


class BudgetPolicy(ConclaveBaseModel):
    """Optional cost ceilings. A missing ceiling leaves that scope unbounded."""

    max_participant_cost: Optional[float] = Field(default=None, gt=0)
    max_job_cost: Optional[float] = Field(default=None, gt=0)
    warning_threshold: float = Field(default=0.8, gt=0, lt=1)


class PricingEntry(ConclaveBaseModel):
    """Price per million input/output units for a model family key."""

    key: str = Field(min_length=1)
    input_per_million: float = Field(ge=0)
    output_per_million: float = Field(ge=0)


class ExperimentConfig(ConclaveBaseModel):
    """Declarative description of a batch of simulation jobs."""

    experiment_id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    backends: list[BackendConfig] = Field(default_factory=list)
    job_count: int = Field(default=1, ge=1)
    concurrency: int = Field(default=1, ge=1)
    max_steps_per_job: int = Field(default=0, ge=0)
    default_backend: Optional[str] = None
    default_address: Optional[str] = None
    jobs: Optional[list[JobConfig]] = None
    budget: Optional[BudgetPolicy] = None
    pricing: list[PricingEntry] = Field(default_factory=list)
    output_dir: Optional[Path] = None
    run_analysis: bool = True
    save_snapshots: bool = True
    verbose: bool = False

    # Passed through to the engine untouched
    phase_delay_ms: int = Field(default=0, ge=0)
    negotiation_minutes: Optional[float] = None

    def get_backend(self, backend_id: str) -> BackendConfig | None:
        """Look up a backend entry by id."""
        for backend in self.backends:
            if backend.id == backend_id:
                return backend
        return None

    def resolved_output_dir(self) -> Path:
        """Directory artifacts are written to."""
        if self.output_dir is not None:
            return self.output_dir
        return Path.cwd() / "experiments" / self.experiment_id
