# Copyright (c) Syntropy Systems
"""Pytest fixtures for conclave tests."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from conclave.credentials import EnvironmentCredentials
from conclave.models.experiment import ExperimentConfig

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def conclave_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary project directory with a .conclave config."""
    conclave_dir = temp_dir / ".conclave"
    conclave_dir.mkdir()
    _ = (conclave_dir / "config.yaml").write_text(
        "experiments_dir: runs\nconcurrency: 2\nlog_level: warning\n"
    )

    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def no_credentials() -> EnvironmentCredentials:
    """Credential resolver backed by an empty environment."""
    return EnvironmentCredentials({})


@pytest.fixture
def mock_experiment(temp_dir: Path) -> ExperimentConfig:
    """Three jobs against the mock backend, two at a time."""
    return ExperimentConfig(
        experiment_id="exp",
        name="Mock experiment",
        job_count=3,
        concurrency=2,
        default_address="mock",
        output_dir=temp_dir / "out",
    )
