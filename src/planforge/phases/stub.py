"""Deterministic planner and reviewer that replay scripted outputs."""

from __future__ import annotations

from typing import Any

from planforge.errors import PhaseError
from planforge.models.base import TokenUsage
from planforge.phases.base import Planner, PlanningContext, ReviewContext, Reviewer
from planforge.plan import Plan, validate_plan_payload
from planforge.review import ReviewResult, validate_review_payload

ScriptedItem = Any


def _usage_for(usage: list[TokenUsage] | None, index: int) -> TokenUsage | None:
    if not usage:
        return None
    return usage[min(index, len(usage) - 1)]


class ScriptedPlanner(Planner):
    """Replays plans in order; the last one repeats once the script runs out.

    Items may be Plan instances, raw dicts, or exceptions to raise.
    """

    def __init__(
        self, plans: list[ScriptedItem], usage: list[TokenUsage] | None = None
    ) -> None:
        super().__init__()
        if not plans:
            raise ValueError("ScriptedPlanner needs at least one plan")
        self._plans = list(plans)
        self._usage = usage
        self.calls: list[PlanningContext] = []

    async def generate_plan(self, ctx: PlanningContext) -> Plan:
        index = len(self.calls)
        self.calls.append(ctx)
        self._report_usage(_usage_for(self._usage, index))
        item = self._plans[min(index, len(self._plans) - 1)]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Plan):
            return item.model_copy(deep=True)
        try:
            return validate_plan_payload(item)
        except ValueError as exc:
            raise PhaseError(f"Scripted plan {index} is invalid: {exc}") from exc


class ScriptedReviewer(Reviewer):
    """Replays reviews in order; bare LLM review dicts are accepted."""

    def __init__(
        self, reviews: list[ScriptedItem], usage: list[TokenUsage] | None = None
    ) -> None:
        super().__init__()
        if not reviews:
            raise ValueError("ScriptedReviewer needs at least one review")
        self._reviews = list(reviews)
        self._usage = usage
        self.calls: list[tuple[Plan, ReviewContext]] = []

    async def review_plan(self, plan: Plan, ctx: ReviewContext) -> ReviewResult:
        index = len(self.calls)
        self.calls.append((plan, ctx))
        self._report_usage(_usage_for(self._usage, index))
        item = self._reviews[min(index, len(self._reviews) - 1)]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ReviewResult):
            return item.model_copy(deep=True)
        try:
            return validate_review_payload(item)
        except ValueError as exc:
            raise PhaseError(f"Scripted review {index} is invalid: {exc}") from exc
