from __future__ import annotations

from datetime import datetime, timedelta, timezone

from planforge.errors import GuardrailStop
from planforge.guardrails import GuardrailLimits, Guardrails
from planforge.state import OrchestrationState


def _state(**updates) -> OrchestrationState:
    state = OrchestrationState.new("s", "task", "s")
    for key, value in updates.items():
        setattr(state, key, value)
    return state


def test_no_stop_within_limits() -> None:
    assert Guardrails().check(_state(iteration=1, total_tokens=10)) is None


def test_token_budget_boundary() -> None:
    guardrails = Guardrails(GuardrailLimits(max_total_tokens=1000))
    assert guardrails.check(_state(total_tokens=1000)) is None
    stop = guardrails.check(_state(total_tokens=1200))
    assert stop is not None
    assert stop.kind == "token_budget_exhausted"
    assert (stop.used, stop.limit) == (1200, 1000)


def test_negative_token_limit_is_unlimited() -> None:
    guardrails = Guardrails(GuardrailLimits(max_total_tokens=-1))
    assert guardrails.check(_state(total_tokens=10**9)) is None


def test_iteration_and_tool_call_limits() -> None:
    guardrails = Guardrails(GuardrailLimits(max_iterations=3, max_tool_calls=5))
    assert guardrails.check(_state(iteration=3)).kind == "max_iterations"
    assert guardrails.check(_state(iteration=1, tool_calls=5)).kind == "max_tool_calls"


def test_timeout_fires_at_limit() -> None:
    guardrails = Guardrails(GuardrailLimits(execution_timeout_secs=60))
    state = _state()
    started = datetime.fromisoformat(state.start_time_iso)
    assert guardrails.check(state, now=started + timedelta(seconds=59)) is None
    stop = guardrails.check(state, now=started + timedelta(seconds=60))
    assert stop is not None and stop.kind == "execution_timeout"


def test_priority_prefers_execution_error_then_tokens() -> None:
    guardrails = Guardrails(GuardrailLimits(max_total_tokens=1, max_iterations=1, max_phase_errors=2))
    state = _state(total_tokens=5, iteration=4, consecutive_phase_errors=2, last_error="boom")
    stop = guardrails.check(state, now=datetime.now(timezone.utc))
    assert stop.kind == "execution_error"
    assert stop.describe() == "Execution error: boom"
    state.consecutive_phase_errors = 0
    assert guardrails.check(state).kind == "token_budget_exhausted"


def test_mandatory_conditions_detected() -> None:
    plan_json = {
        "title": "Rotate password storage",
        "file_references": [{"path": "config/prod.env"}],
        "instructions": [{"params": {"command": "psql -c 'DROP TABLE users'"}}],
        "risks": [{"description": "Modify public API of the client"}],
    }
    names = [
        condition.name
        for condition in Guardrails().check_all_conditions(plan_json, score=0.3, iteration=7)
    ]
    assert names == [
        "security_sensitive",
        "sensitive_file_pattern",
        "low_score",
        "iteration_soft_limit",
        "breaking_api_changes",
        "data_deletion",
    ]


def test_clean_plan_has_no_conditions() -> None:
    conditions = Guardrails().check_all_conditions({"title": "Add foo"}, score=0.9, iteration=1)
    assert conditions == []


def test_check_before_finalize_skips_approved_categories() -> None:
    state = _state()
    state.request_human_input("ok?", "security_sensitive", "secrets involved")
    state.apply_human_response("approved", approved=True)
    remaining = Guardrails().check_before_finalize({"title": "store secret"}, state)
    assert [condition.name for condition in remaining] == ["low_score"]


def test_guardrail_stop_carries_the_hard_stop() -> None:
    stop = Guardrails(GuardrailLimits(max_iterations=2)).check(_state(iteration=2))
    error = GuardrailStop(stop)
    assert error.hard_stop is stop
    assert str(error) == "Max iterations reached: 2 of 2"
