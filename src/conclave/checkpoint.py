# Copyright (c) Syntropy Systems
"""Durable per-job engine checkpoints.

Each checkpoint is an opaque JSON object written by the engine, stored under
``jobs/<job_id>/snapshots/`` and keyed by step number and simulated time.
Resuming means loading the blob and handing it back to the engine.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, ValidationError

from conclave.errors import ConfigurationError
from conclave.models.base import ConclaveBaseModel, JSONObject, utcnow
from conclave.models.results import SnapshotRef

if TYPE_CHECKING:
    from conclave.models.experiment import SimTime


class CheckpointFile(ConclaveBaseModel):
    """On-disk checkpoint format."""

    ref: SnapshotRef
    saved_at: datetime = Field(default_factory=utcnow)
    state: JSONObject = Field(default_factory=dict)


class CheckpointStore:
    """Reads and writes checkpoints below an experiment's output directory."""

    root: Path

    def __init__(self, root: Path) -> None:
        self.root = root

    def snapshots_dir(self, job_id: str) -> Path:
        """Directory holding one job's checkpoints."""
        return self.root / "jobs" / job_id / "snapshots"

    def save(self, job_id: str, step: int, sim_time: SimTime, state: JSONObject) -> SnapshotRef:
        """Write a checkpoint and return a reference to it."""
        directory = self.snapshots_dir(job_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{step:04d}-{sim_time.label()}.json"
        ref = SnapshotRef(job_id=job_id, step=step, sim_time=sim_time, path=str(path))
        checkpoint = CheckpointFile(ref=ref, state=state)
        tmp_path = path.with_suffix(".tmp")
        _ = tmp_path.write_text(checkpoint.model_dump_json(indent=2))
        _ = tmp_path.replace(path)
        return ref

    def load(self, ref: SnapshotRef) -> JSONObject:
        """Load the engine state behind a reference.

        The file is looked up below this store's root by name, so a reference
        saved before the experiment directory was moved still resolves.
        """
        return self._read(self.snapshots_dir(ref.job_id) / Path(ref.path).name).state

    def list_refs(self, job_id: str) -> list[SnapshotRef]:
        """All checkpoints of a job, oldest first."""
        directory = self.snapshots_dir(job_id)
        if not directory.is_dir():
            return []
        return [self._read(path).ref for path in sorted(directory.glob("*.json"))]

    def _read(self, path: Path) -> CheckpointFile:
        try:
            return CheckpointFile.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            msg = f"Cannot load checkpoint {path}: {e}"
            raise ConfigurationError(msg) from e
