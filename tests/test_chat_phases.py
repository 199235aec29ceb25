from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from planforge.checklist import run_hard_checks
from planforge.config import PACKAGE_DIR
from planforge.errors import ConfigError, PhaseError
from planforge.models.base import BaseChatModel, ModelResponse, TokenUsage
from planforge.models.mock import MockChatModel, offline_plan
from planforge.models.openai_compat import OpenAICompatError
from planforge.phases.base import PlanningContext, ReviewContext
from planforge.phases.chat import ChatPlanner, ChatReviewer
from planforge.phases.recipes import Recipe, load_recipe
from planforge.plan import validate_plan_payload
from planforge.viability.checker import ViabilityChecker
from planforge.viability.dag import analyze_dag

RECIPES = PACKAGE_DIR / "recipes"
RECIPE = Recipe(path=Path("inline.yaml"), instructions="You plan things.", prompt="Be brief.")


class FailingModel(BaseChatModel):
    def chat(self, messages):
        raise OpenAICompatError("upstream down")


def test_mock_planner_produces_viable_plan() -> None:
    seen: list[TokenUsage] = []
    planner = ChatPlanner(MockChatModel(role="planner"), RECIPE)
    planner.set_usage_callback(seen.append)
    plan = asyncio.run(planner.generate_plan(PlanningContext(task="Add foo endpoint")))

    assert plan.title == "Add foo endpoint"
    assert all(result.passed for result in run_hard_checks(plan))
    assert ViabilityChecker().check_plan(plan).passed is True
    assert seen and seen[0].estimated is True
    messages = planner.model.calls[0]
    assert messages[0] == {"role": "system", "content": "You plan things."}
    assert messages[1]["content"].startswith("Be brief.")


def test_offline_plan_uses_first_task_line() -> None:
    plan = validate_plan_payload(offline_plan("Fix login\nmore detail"))
    assert plan.title == "Fix login"
    assert analyze_dag(plan.instructions).critical_path_length == 5


def test_planner_update_prompt_carries_feedback(plan_payload) -> None:
    planner = ChatPlanner(MockChatModel(role="planner"), RECIPE)
    ctx = PlanningContext(
        task="Add foo",
        iteration=2,
        working_dir="/repo",
        pending_feedback=["[CRITICAL] No rollback step"],
        current_plan=validate_plan_payload(plan_payload),
        context_summary="Iteration: 1",
    )
    prompt = planner.build_prompt(ctx)
    assert "Task: Add foo" in prompt
    assert "Working directory: /repo" in prompt
    assert "Previous plan:" in prompt
    assert "[CRITICAL] No rollback step" in prompt
    assert "Session so far:\nIteration: 1" in prompt


def test_planner_accepts_fenced_reply(plan_payload) -> None:
    reply = "Here is the plan:\n```json\n" + json.dumps(plan_payload) + "\n```"
    model = MockChatModel(scripted=[ModelResponse(final_text=reply)])
    plan = asyncio.run(ChatPlanner(model, RECIPE).generate_plan(PlanningContext(task="x")))
    assert plan.title == "Add foo"


@pytest.mark.parametrize(
    "reply",
    ["", "I cannot do that", json.dumps({"title": ["not", "a", "string"]})],
)
def test_planner_bad_replies_raise_phase_error(reply: str) -> None:
    model = MockChatModel(scripted=[ModelResponse(final_text=reply)])
    with pytest.raises(PhaseError):
        asyncio.run(ChatPlanner(model, RECIPE).generate_plan(PlanningContext(task="x")))


def test_model_failure_becomes_phase_error() -> None:
    with pytest.raises(PhaseError) as excinfo:
        asyncio.run(ChatPlanner(FailingModel(), RECIPE).generate_plan(PlanningContext(task="x")))
    assert "upstream down" in str(excinfo.value)


def test_reviewer_prompt_and_reply(plan_payload) -> None:
    plan = validate_plan_payload(plan_payload)
    reviewer = ChatReviewer(MockChatModel(role="reviewer"), Recipe(Path("r"), "Review."))
    ctx = ReviewContext(
        iteration=1,
        checklist=run_hard_checks(plan),
        viability=ViabilityChecker().check_plan(plan),
        dag_metrics=analyze_dag(plan.instructions),
        threshold=0.75,
    )
    prompt = reviewer.build_prompt(plan, ctx)
    assert "Hard checklist:" in prompt
    assert "Viability analysis:" in prompt
    assert "Instruction graph:" in prompt
    assert "score 0.75" in prompt
    review = asyncio.run(reviewer.review_plan(plan, ctx))
    assert review.score == 0.9


def test_generic_mock_reply() -> None:
    response = MockChatModel().chat([{"role": "user", "content": "hello"}])
    assert response.final_text == "Mock response to: hello"


def test_bundled_recipes_load() -> None:
    pytest.importorskip("yaml")
    planner = load_recipe(RECIPES / "planner.yaml")
    reviewer = load_recipe(RECIPES / "reviewer.yaml")
    assert planner.provider == "openai"
    assert "SEARCH_CODE" in planner.instructions
    assert planner.prompt
    assert reviewer.prompt is None


def test_recipe_errors(tmp_path: Path) -> None:
    pytest.importorskip("yaml")
    with pytest.raises(ConfigError):
        load_recipe(tmp_path / "missing.yaml")
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_recipe(empty)
    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("instructions: hi\nextensions: []\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="unknown fields"):
        load_recipe(unknown)
    blank = tmp_path / "blank.yaml"
    blank.write_text("instructions: '  '\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_recipe(blank)
