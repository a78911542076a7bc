# Copyright (c) Syntropy Systems
"""Simulation engines shipped with conclave."""

from conclave.engines.mock import MockEngine, MockGameState

__all__ = ["MockEngine", "MockGameState"]
