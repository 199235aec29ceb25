"""LLM-backed planner and reviewer built on a chat model and a recipe."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from planforge.checklist import summarize_checks
from planforge.errors import PhaseError
from planforge.models.base import BaseChatModel, ModelResponse
from planforge.models.openai_compat import OpenAICompatError
from planforge.phases.base import Planner, PlanningContext, ReviewContext, Reviewer
from planforge.phases.recipes import Recipe
from planforge.plan import Plan, validate_plan_payload
from planforge.review import ReviewResult, validate_review_payload
from planforge.util.json_repair import JsonRepairError, loads_object
from planforge.util.logging import get_logger

PLAN_REPLY_HINT = "Respond with a single JSON object describing the plan. No prose outside it."
REVIEW_REPLY_HINT = (
    "Respond with a single JSON object with keys overall_assessment, gaps, unclear_areas,"
    " suggestions, score (0..1), requires_human_input and human_input_reason."
)


def _parse_reply(response: ModelResponse, what: str) -> dict[str, Any]:
    text = response.final_text or ""
    if not text.strip():
        raise PhaseError(f"{what} returned an empty reply")
    try:
        return loads_object(text)
    except JsonRepairError as exc:
        raise PhaseError(f"{what} reply is not valid JSON: {exc}") from exc


class _ChatPhase:
    def __init__(self, model: BaseChatModel, recipe: Recipe) -> None:
        self.model = model
        self.recipe = recipe
        self.logger = get_logger("planforge.phases")

    async def _ask(self, user_prompt: str, what: str) -> ModelResponse:
        messages = [
            {"role": "system", "content": self.recipe.instructions},
            {"role": "user", "content": user_prompt},
        ]
        try:
            return await asyncio.to_thread(self.model.chat, messages)
        except OpenAICompatError as exc:
            raise PhaseError(f"{what} model call failed: {exc}") from exc


class ChatPlanner(_ChatPhase, Planner):
    def __init__(self, model: BaseChatModel, recipe: Recipe) -> None:
        Planner.__init__(self)
        _ChatPhase.__init__(self, model, recipe)

    def build_prompt(self, ctx: PlanningContext) -> str:
        sections: list[str] = []
        if self.recipe.prompt:
            sections.append(self.recipe.prompt.strip())
        sections.append(f"Task: {ctx.task.strip()}")
        if ctx.working_dir:
            sections.append(f"Working directory: {ctx.working_dir}")
        sections.append(f"Iteration: {ctx.iteration}")
        if ctx.context_summary:
            sections.append(f"Session so far:\n{ctx.context_summary}")
        if ctx.is_update and ctx.current_plan is not None:
            sections.append(
                "Previous plan:\n" + json.dumps(ctx.current_plan.to_json(), indent=2)
            )
            if ctx.pending_feedback:
                sections.append(
                    "Address this feedback in the revised plan:\n"
                    + "\n".join(ctx.pending_feedback)
                )
        sections.append(PLAN_REPLY_HINT)
        return "\n\n".join(sections)

    async def generate_plan(self, ctx: PlanningContext) -> Plan:
        response = await self._ask(self.build_prompt(ctx), "planner")
        self._report_usage(response.usage)
        payload = _parse_reply(response, "planner")
        try:
            plan = validate_plan_payload(payload)
        except ValueError as exc:
            raise PhaseError(f"planner returned an invalid plan: {exc}") from exc
        self.logger.info("planner.plan title=%s iteration=%s", plan.title, ctx.iteration)
        return plan


class ChatReviewer(_ChatPhase, Reviewer):
    def __init__(self, model: BaseChatModel, recipe: Recipe) -> None:
        Reviewer.__init__(self)
        _ChatPhase.__init__(self, model, recipe)

    def build_prompt(self, plan: Plan, ctx: ReviewContext) -> str:
        sections: list[str] = []
        if self.recipe.prompt:
            sections.append(self.recipe.prompt.strip())
        sections.append(f"Iteration: {ctx.iteration}")
        if ctx.working_dir:
            sections.append(f"Working directory: {ctx.working_dir}")
        sections.append(f"Plan under review:\n{json.dumps(plan.to_json(), indent=2)}")
        if ctx.checklist:
            sections.append(f"Hard checklist:\n{summarize_checks(ctx.checklist)}")
        if ctx.viability is not None:
            sections.append(f"Viability analysis:\n{ctx.viability.summary()}")
        if ctx.dag_metrics is not None:
            table = ctx.dag_metrics.to_markdown()
            if table:
                sections.append(f"Instruction graph:\n{table}")
        sections.append(f"A plan passes at score {ctx.threshold:.2f} or above.")
        sections.append(REVIEW_REPLY_HINT)
        return "\n\n".join(sections)

    async def review_plan(self, plan: Plan, ctx: ReviewContext) -> ReviewResult:
        response = await self._ask(self.build_prompt(plan, ctx), "reviewer")
        self._report_usage(response.usage)
        payload = _parse_reply(response, "reviewer")
        try:
            review = validate_review_payload(payload)
        except ValueError as exc:
            raise PhaseError(f"reviewer returned an invalid review: {exc}") from exc
        self.logger.info("reviewer.score value=%.2f iteration=%s", review.score, ctx.iteration)
        return review
