# Copyright (c) Syntropy Systems
"""Exception hierarchy for conclave.

Configuration errors are raised before any job starts. Per-job errors are
caught at the job boundary and recorded on the job's result. Artifact errors
surface after the run has finished.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conclave.models.usage import BudgetScope


class ConclaveError(Exception):
    """Base class for conclave errors."""


class ConfigurationError(ConclaveError):
    """The experiment description cannot be run as given."""


class AddressError(ConfigurationError):
    """A backend address string could not be resolved."""


class MissingCredentialError(ConfigurationError):
    """A backend needs a credential the resolver does not have."""


class DuplicateJobError(ConfigurationError):
    """Two jobs in one experiment share an id."""


class JobError(ConclaveError):
    """A fault confined to a single job."""


class BudgetExceededError(JobError):
    """A cost ceiling was reached for the running job."""

    scope: BudgetScope

    def __init__(self, scope: BudgetScope, message: str) -> None:
        super().__init__(message)
        self.scope = scope


class StepLimitReached(JobError):
    """The job hit its step ceiling before reaching an outcome."""


class JobInterrupted(JobError):
    """The experiment was aborted while the job was in flight."""


class BackendError(JobError):
    """A decision backend returned an error."""


class ArtifactWriteError(ConclaveError):
    """Experiment artifacts could not be written."""
