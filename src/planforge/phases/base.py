"""Planner and reviewer collaborator interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from planforge.models.base import TokenUsage
from planforge.plan import Plan
from planforge.review import HardCheckResult, ReviewResult
from planforge.viability.dag import DagMetrics
from planforge.viability.types import ViabilityResult

UsageCallback = Callable[[TokenUsage], None]


@dataclass
class PlanningContext:
    task: str
    iteration: int = 1
    working_dir: str | None = None
    pending_feedback: list[str] = field(default_factory=list)
    current_plan: Plan | None = None
    context_summary: str = ""

    @property
    def is_update(self) -> bool:
        return self.current_plan is not None and self.iteration > 1


@dataclass
class ReviewContext:
    iteration: int = 1
    working_dir: str | None = None
    checklist: list[HardCheckResult] = field(default_factory=list)
    viability: ViabilityResult | None = None
    dag_metrics: DagMetrics | None = None
    threshold: float = 0.8


class _Phase(ABC):
    def __init__(self) -> None:
        self._usage_callback: UsageCallback | None = None

    def set_usage_callback(self, callback: UsageCallback | None) -> None:
        self._usage_callback = callback

    def _report_usage(self, usage: TokenUsage | None) -> None:
        if usage is not None and self._usage_callback is not None:
            self._usage_callback(usage)


class Planner(_Phase):
    """Produces a plan for the task, refining the previous one when feedback exists."""

    @abstractmethod
    async def generate_plan(self, ctx: PlanningContext) -> Plan:
        raise NotImplementedError


class Reviewer(_Phase):
    """Scores a plan; the controller attaches the hard checklist afterwards."""

    @abstractmethod
    async def review_plan(self, plan: Plan, ctx: ReviewContext) -> ReviewResult:
        raise NotImplementedError
