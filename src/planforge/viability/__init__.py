"""Static viability analysis of plan instruction graphs."""

from planforge.viability.checker import ViabilityChecker
from planforge.viability.dag import DagMetrics, analyze_dag
from planforge.viability.types import ViabilityConfig, ViabilityResult, Violation

__all__ = [
    "DagMetrics",
    "ViabilityChecker",
    "ViabilityConfig",
    "ViabilityResult",
    "Violation",
    "analyze_dag",
]
