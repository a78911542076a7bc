"""
conclave - Batch orchestration for multi-agent simulations.

Run many metered simulation jobs at once, keep their costs in check,
and fold the outcomes into experiment statistics.
"""

from conclave.address import resolve
from conclave.aggregate import fold
from conclave.governor import BudgetGovernor
from conclave.normalize import normalize
from conclave.orchestrator import Orchestrator

__version__ = "0.1.0"
__all__ = ["BudgetGovernor", "Orchestrator", "fold", "normalize", "resolve", "__version__"]
