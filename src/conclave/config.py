# Copyright (c) Syntropy Systems
"""Tool configuration and experiment-file loading."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, cast

import yaml
from pydantic import ValidationError

from conclave.errors import ConfigurationError
from conclave.models.experiment import ExperimentConfig


@dataclass
class ConclaveConfig:
    """Configuration for the conclave CLI."""

    # Where experiment directories are created, relative to the working directory
    experiments_dir: str = "experiments"

    # Default concurrency ceiling when neither file nor flag sets one
    concurrency: int = 1

    # Fraction of a ceiling at which budget warnings start
    warning_threshold: float = 0.8

    log_level: str = "INFO"

    # Engine as "module:attribute"; None means the built-in mock engine
    engine: Optional[str] = None


def find_conclave_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .conclave directory by walking up from start_path.

    Returns None if no .conclave directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while True:
        conclave_dir = current / ".conclave"
        if conclave_dir.is_dir():
            return conclave_dir
        if current == current.parent:
            return None
        current = current.parent


def get_global_config_dir() -> Path:
    """Get the global conclave config directory (~/.conclave)."""
    return Path.home() / ".conclave"


def load_config(conclave_dir: Path | None = None) -> ConclaveConfig:
    """Load configuration from .conclave/config.yaml or defaults.

    Looks for config in:
    1. Provided conclave_dir
    2. Nearest .conclave directory walking up
    3. ~/.conclave/config.yaml
    4. Defaults
    """
    config = ConclaveConfig()

    config_path = None
    if conclave_dir is not None:
        config_path = conclave_dir / "config.yaml"
    else:
        found_dir = find_conclave_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return config

    try:
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {config_path}: {e}"
        raise ConfigurationError(msg) from e

    experiments_dir = data.get("experiments_dir")
    if isinstance(experiments_dir, str):
        config.experiments_dir = experiments_dir
    concurrency = data.get("concurrency")
    if isinstance(concurrency, int) and concurrency >= 1:
        config.concurrency = concurrency
    warning_threshold = data.get("warning_threshold")
    if isinstance(warning_threshold, (int, float)) and 0 < warning_threshold < 1:
        config.warning_threshold = float(warning_threshold)
    log_level = data.get("log_level")
    if isinstance(log_level, str):
        config.log_level = log_level.upper()
    engine = data.get("engine")
    if isinstance(engine, str):
        config.engine = engine

    return config


def default_output_dir(config: ConclaveConfig, experiment_id: str) -> Path:
    """Output directory for an experiment that does not set one."""
    return Path(config.experiments_dir) / experiment_id


def load_experiment_file(path: Path) -> ExperimentConfig:
    """Load an experiment description from a YAML or JSON file."""
    try:
        text = path.read_text()
    except OSError as e:
        msg = f"Cannot read {path}: {e}"
        raise ConfigurationError(msg) from e

    try:
        if path.suffix.lower() == ".json":
            data = cast("object", json.loads(text))
        else:
            data = cast("object", yaml.safe_load(text))
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        msg = f"Cannot parse {path}: {e}"
        raise ConfigurationError(msg) from e

    if not isinstance(data, dict):
        msg = f"{path} must contain a mapping at the top level"
        raise ConfigurationError(msg)

    try:
        return ExperimentConfig.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid experiment in {path}:\n{e}"
        raise ConfigurationError(msg) from e
