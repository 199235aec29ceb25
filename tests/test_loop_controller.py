from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
from typing import Any

import pytest

from planforge.config import ForgeConfig, GuardrailsConfig, OutputConfig
from planforge.errors import HumanInputRequired, PersistenceError, PhaseError
from planforge.guardrails import Guardrails
from planforge.loop_controller import LoopController, viability_feedback
from planforge.metrics import METRICS_FILE
from planforge.models.base import TokenUsage
from planforge.output import FileOutputWriter
from planforge.phases.stub import ScriptedPlanner, ScriptedReviewer
from planforge.plan import validate_plan_payload
from planforge.registry import SessionRegistry
from planforge.state import OrchestrationState, ResumeState
from planforge.status import derive_status
from planforge.viability.checker import ViabilityChecker

SLUG = "add-foo"


def _controller(
    tmp_path: Path,
    planner: ScriptedPlanner,
    reviewer: ScriptedReviewer,
    **guardrails: Any,
) -> LoopController:
    config = ForgeConfig(
        output=OutputConfig(runs_dir=str(tmp_path / "runs"), active_dir=str(tmp_path / "active")),
        guardrails=GuardrailsConfig(**guardrails),
    )
    session_dir = tmp_path / "runs" / SLUG
    output = FileOutputWriter(session_dir, tmp_path / "active", SLUG)
    return LoopController(
        planner=planner,
        reviewer=reviewer,
        output=output,
        config=config,
        session_dir=session_dir,
        slug=SLUG,
        registry=SessionRegistry(),
    )


def _session(tmp_path: Path) -> Path:
    return tmp_path / "runs" / SLUG


def _plan_md(tmp_path: Path) -> str:
    return (tmp_path / "active" / SLUG / f"{SLUG}-plan.md").read_text(encoding="utf-8")


def test_approved_on_first_iteration(tmp_path, plan_payload, passing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([passing_review])
    result = asyncio.run(_controller(tmp_path, planner, reviewer).run("Add foo"))

    assert result.success is True
    assert result.total_iterations == 1
    assert result.status.kind == "completed"
    assert result.final_plan.title == "Add foo"
    assert result.final_plan.metadata.iteration == 1
    session = _session(tmp_path)
    assert (session / "plan-iteration-1.json").exists()
    review = json.loads((session / "review-iteration-1.json").read_text())
    assert review["passed"] is True
    assert len(review["hard_check_results"]) == 6
    assert "**Status:** Approved" in _plan_md(tmp_path)
    assert (tmp_path / "active" / SLUG / f"{SLUG}-dag.json").exists()
    assert (session / f"{SLUG}-final.json").exists()
    assert (session / METRICS_FILE).exists()

    state = OrchestrationState.load(session)
    assert state.status.kind == "completed"
    assert state.best_score == 0.9
    assert state.iteration_history[0].outcome == "review_passed"
    assert planner.calls[0].is_update is False
    _, ctx = reviewer.calls[0]
    assert ctx.viability.passed is True
    assert ctx.dag_metrics.total_nodes == 6


def test_feedback_flows_into_next_iteration(
    tmp_path, plan_payload, failing_review, passing_review
) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([failing_review, passing_review])
    result = asyncio.run(_controller(tmp_path, planner, reviewer).run("Add foo"))

    assert result.success is True
    assert result.total_iterations == 2
    second = planner.calls[1]
    assert second.is_update is True
    assert "[CRITICAL] No rollback step" in second.pending_feedback
    assert "  Suggested: Add a revert checkpoint" in second.pending_feedback
    assert "[CLARIFY] Which crate?" in second.pending_feedback
    assert result.final_plan.metadata.version == 2


def test_viability_violations_become_feedback(
    tmp_path, plan_payload, failing_review, passing_review
) -> None:
    plan_payload["instructions"] = [
        {"id": "edit", "op": "EDIT_CODE", "params": {"files": ["a.rs"]}},
    ]
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([failing_review, passing_review])
    asyncio.run(_controller(tmp_path, planner, reviewer).run("Add foo"))

    feedback = planner.calls[1].pending_feedback
    assert any(line.startswith("[MUST FIX] VIABILITY-") for line in feedback)
    state = OrchestrationState.load(_session(tmp_path))
    assert state.iteration_history[0].outcome == "viability_failed"
    assert state.iteration_history[0].viability_critical >= 1


def test_viability_feedback_format(plan_payload) -> None:
    plan_payload["instructions"] = [
        {"id": "edit", "op": "EDIT_CODE", "params": {"files": ["a.rs"]}},
    ]
    result = ViabilityChecker().check_plan(validate_plan_payload(plan_payload))
    feedback = viability_feedback(result)
    assert "[MUST FIX] VIABILITY-001: Code edit without test verification" in feedback
    assert len(feedback) == 2 * len(result.violations)
    assert all(line.startswith("  Suggested: ") for line in feedback[1::2])


def test_token_budget_stop_keeps_best_plan(tmp_path, plan_payload, failing_review) -> None:
    planner = ScriptedPlanner(
        [plan_payload], usage=[TokenUsage(input_tokens=1000, output_tokens=200)]
    )
    reviewer = ScriptedReviewer([failing_review])
    controller = _controller(tmp_path, planner, reviewer, max_total_tokens=1000)
    result = asyncio.run(controller.run("Add foo"))

    assert result.success is False
    assert result.status.kind == "completed_best_effort"
    assert result.status.hard_stop.kind == "token_budget_exhausted"
    assert result.status.hard_stop.used == 1200
    assert result.total_iterations == 1
    assert result.best_score == 0.6
    assert result.final_plan.title == "Add foo"
    assert "Best Effort (score 0.60)" in _plan_md(tmp_path)
    state = OrchestrationState.load(_session(tmp_path))
    assert state.token_breakdown.planner_input == 1000
    assert state.best_plan["title"] == "Add foo"


def test_zero_score_stop_is_hard_stopped(tmp_path, plan_payload) -> None:
    planner = ScriptedPlanner(
        [plan_payload], usage=[TokenUsage(input_tokens=1000, output_tokens=200)]
    )
    reviewer = ScriptedReviewer([{"score": 0.0}])
    result = asyncio.run(
        _controller(tmp_path, planner, reviewer, max_total_tokens=1000).run("Add foo")
    )
    assert result.status.kind == "hard_stopped"
    assert "DRAFT" in _plan_md(tmp_path)

    rerun = asyncio.run(
        _controller(tmp_path, planner, reviewer, max_total_tokens=1000).run("Add foo")
    )
    assert rerun.status.kind == "hard_stopped"
    assert len(planner.calls) == 1


def test_max_iterations_stop(tmp_path, plan_payload, failing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([failing_review])
    result = asyncio.run(_controller(tmp_path, planner, reviewer, max_iterations=2).run("Add foo"))
    assert result.total_iterations == 2
    assert result.status.kind == "completed_best_effort"
    assert result.status.hard_stop.kind == "max_iterations"
    assert result.status.reason == "Max iterations reached: 2 of 2"


def test_repeated_phase_errors_stop_the_loop(tmp_path) -> None:
    planner = ScriptedPlanner([PhaseError("bad json")])
    reviewer = ScriptedReviewer([{"score": 0.9}])
    result = asyncio.run(_controller(tmp_path, planner, reviewer, max_phase_errors=3).run("Add foo"))

    assert result.status.kind == "hard_stopped"
    assert result.status.hard_stop.kind == "execution_error"
    assert result.status.hard_stop.message == "bad json"
    assert result.total_iterations == 3
    assert result.final_plan is None
    assert reviewer.calls == []
    state = OrchestrationState.load(_session(tmp_path))
    assert "phase_error:bad json" in state.triggered_conditions
    assert [record.outcome for record in state.iteration_history] == ["phase_error"] * 3


def test_phase_error_counter_resets_after_success(
    tmp_path, plan_payload, failing_review, passing_review
) -> None:
    planner = ScriptedPlanner([PhaseError("timeout"), plan_payload])
    reviewer = ScriptedReviewer([failing_review, passing_review])
    result = asyncio.run(_controller(tmp_path, planner, reviewer, max_phase_errors=2).run("Add foo"))
    assert result.success is True
    assert result.total_iterations == 3
    state = OrchestrationState.load(_session(tmp_path))
    assert state.consecutive_phase_errors == 0
    assert state.last_error is None


def test_unexpected_error_marks_session_failed(tmp_path, plan_payload) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([RuntimeError("reviewer crashed")])
    with pytest.raises(RuntimeError):
        asyncio.run(_controller(tmp_path, planner, reviewer).run("Add foo"))
    state = OrchestrationState.load(_session(tmp_path))
    assert state.status.kind == "failed"
    assert state.status.error == "reviewer crashed"


def test_human_input_pause_and_resume(tmp_path, plan_payload, passing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer(
        [
            {"score": 0.5, "requires_human_input": True, "human_input_reason": "Which DB?"},
            passing_review,
        ]
    )
    controller = _controller(tmp_path, planner, reviewer)
    with pytest.raises(HumanInputRequired) as excinfo:
        asyncio.run(controller.run("Add foo"))

    assert excinfo.value.slug == SLUG
    assert "Which DB?" in excinfo.value.render()
    assert f"--path {tmp_path / 'runs'}/{SLUG}" in excinfo.value.resume_command
    assert "DRAFT - Awaiting Human Input" in _plan_md(tmp_path)
    state = OrchestrationState.load(_session(tmp_path))
    assert state.status.kind == "paused"
    assert state.pending_human_input.question == "Which DB?"

    with pytest.raises(HumanInputRequired):
        asyncio.run(controller.run("Add foo"))
    assert len(planner.calls) == 1

    result = asyncio.run(controller.run("Add foo", human_response="Use Postgres"))
    assert result.success is True
    assert result.total_iterations == 2
    assert "[USER FEEDBACK] Use Postgres" in planner.calls[1].pending_feedback
    state = OrchestrationState.load(_session(tmp_path))
    assert state.pending_human_input is None
    assert state.human_inputs[0].response == "Use Postgres"
    assert "Human approved Which DB?: Use Postgres" in state.context_summary


def test_completed_session_is_not_rerun(tmp_path, plan_payload, passing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([passing_review])
    controller = _controller(tmp_path, planner, reviewer)
    asyncio.run(controller.run("Add foo"))
    again = asyncio.run(controller.run("Add foo"))
    assert again.success is True
    assert len(planner.calls) == 1


def test_condition_gate_requires_approval(tmp_path, plan_payload, passing_review) -> None:
    plan_payload["title"] = "Rotate password storage"
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([passing_review])

    ungated = asyncio.run(
        _controller(tmp_path / "ungated", planner, reviewer).run("Rotate password storage")
    )
    assert ungated.success is True
    state = OrchestrationState.load(_session(tmp_path / "ungated"))
    assert "security_sensitive" in state.triggered_conditions

    controller = _controller(tmp_path, planner, reviewer, require_condition_approval=True)
    with pytest.raises(HumanInputRequired) as excinfo:
        asyncio.run(controller.run("Rotate password storage"))
    assert excinfo.value.question.startswith("Approval required for security_sensitive")
    state = OrchestrationState.load(_session(tmp_path))
    assert state.pending_human_input.category == "security_sensitive"

    result = asyncio.run(controller.run("Rotate password storage", human_response="approved"))
    assert result.success is True


def test_explicit_resume_reuses_plan_without_feedback(
    tmp_path, plan_payload, passing_review
) -> None:
    planner = ScriptedPlanner([PhaseError("planner must not run")])
    reviewer = ScriptedReviewer([passing_review])
    resume = ResumeState(plan=validate_plan_payload(plan_payload), start_iteration=3)
    result = asyncio.run(_controller(tmp_path, planner, reviewer).run("Add foo", resume=resume))
    assert result.success is True
    assert result.total_iterations == 3
    assert planner.calls == []


def test_persistence_failure_propagates(tmp_path, plan_payload, passing_review) -> None:
    class BrokenOutput(FileOutputWriter):
        def write_intermediate(self, plan, iteration):
            raise PersistenceError("disk full")

    controller = _controller(
        tmp_path, ScriptedPlanner([plan_payload]), ScriptedReviewer([passing_review])
    )
    controller.output = BrokenOutput(_session(tmp_path), tmp_path / "active", SLUG)
    with pytest.raises(PersistenceError):
        asyncio.run(controller.run("Add foo"))
    state = OrchestrationState.load(_session(tmp_path))
    assert state.status.kind == "failed"


def test_guardrail_threshold_decides_approval(tmp_path, plan_payload, passing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([passing_review])
    controller = _controller(tmp_path, planner, reviewer, score_threshold=0.95, max_iterations=1)
    result = asyncio.run(controller.run("Add foo"))

    assert result.success is False
    assert result.status.kind == "completed_best_effort"
    assert result.final_review.passed is False
    assert reviewer.calls[0][1].threshold == 0.95
    info = derive_status(_session(tmp_path), threshold=0.95, max_iterations=1)
    assert info.status.kind == "best_effort"


def test_resume_at_iteration_limit_keeps_the_stop(tmp_path, plan_payload, failing_review) -> None:
    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([failing_review])
    controller = _controller(tmp_path, planner, reviewer, max_iterations=2)
    first = asyncio.run(controller.run("Add foo"))
    assert first.status.kind == "completed_best_effort"
    assert len(planner.calls) == 2

    again = asyncio.run(controller.run("Add foo", human_response="one more try"))
    assert again.status.kind == "completed_best_effort"
    assert again.status.reason == "Max iterations reached: 2 of 2"
    assert again.total_iterations == 2
    assert len(planner.calls) == 2

    extended = asyncio.run(controller.run("Add foo", reset_turns=True))
    assert extended.status.kind == "completed_best_effort"
    assert extended.total_iterations == 4
    assert len(planner.calls) == 4
    assert "[USER FEEDBACK] one more try" in planner.calls[2].pending_feedback
    state = OrchestrationState.load(_session(tmp_path))
    assert state.turn_base == 2


def test_timeout_stops_before_next_iteration(tmp_path, plan_payload, failing_review) -> None:
    class LateClock(Guardrails):
        def check(self, state, now=None):
            if state.iteration >= 1:
                now = datetime.now(timezone.utc) + timedelta(seconds=1000)
            return super().check(state, now)

    planner = ScriptedPlanner([plan_payload])
    reviewer = ScriptedReviewer([failing_review])
    controller = _controller(tmp_path, planner, reviewer, execution_timeout_secs=600)
    controller.guardrails = LateClock(controller.config.guardrails.to_limits())
    result = asyncio.run(controller.run("Add foo"))

    assert result.status.kind == "completed_best_effort"
    assert result.status.hard_stop.kind == "execution_timeout"
    assert result.status.reason.startswith("Execution timeout: ")
    assert result.total_iterations == 1
    assert len(planner.calls) == 1
    assert "Best Effort (score 0.60)" in _plan_md(tmp_path)
