"""Fast document-level checks that run before any LLM call."""

from __future__ import annotations

from typing import Callable

from planforge.plan import Plan, PlanPhase
from planforge.review import HardCheckResult


def _phase_has_tasks(phase: PlanPhase) -> bool:
    return any(checkpoint.tasks for checkpoint in phase.checkpoints)


def check_acceptance_criteria(plan: Plan) -> HardCheckResult:
    count = len(plan.acceptance_criteria)
    return HardCheckResult(
        check_name="has_acceptance_criteria",
        passed=count > 0,
        message=f"Found {count} acceptance criteria"
        if count
        else "Plan has no acceptance criteria defined",
        severity="error",
    )


def check_phases(plan: Plan) -> HardCheckResult:
    count = len(plan.phases)
    return HardCheckResult(
        check_name="has_phases",
        passed=count > 0,
        message=f"Found {count} phases" if count else "Plan has no phases defined",
        severity="error",
    )


def check_phases_have_tasks(plan: Plan) -> HardCheckResult:
    empty = [phase.name for phase in plan.phases if not _phase_has_tasks(phase)]
    return HardCheckResult(
        check_name="phases_have_tasks",
        passed=not empty,
        message="All phases have tasks"
        if not empty
        else f"Phases without tasks: {', '.join(empty)}",
        severity="error",
    )


def check_file_references(plan: Plan) -> HardCheckResult:
    invalid = [ref.path for ref in plan.file_references if not ref.is_valid()]
    return HardCheckResult(
        check_name="file_references_valid",
        passed=not invalid,
        message=f"All {len(plan.file_references)} file references are valid"
        if not invalid
        else f"Invalid file references: {', '.join(invalid)}",
        severity="error",
    )


def check_task_descriptions(plan: Plan) -> HardCheckResult:
    empty = sum(
        1
        for phase in plan.phases
        for checkpoint in phase.checkpoints
        for task in checkpoint.tasks
        if not task.description.strip()
    )
    return HardCheckResult(
        check_name="no_empty_descriptions",
        passed=empty == 0,
        message="All tasks have descriptions"
        if empty == 0
        else f"{empty} tasks have empty descriptions",
        severity="warning",
    )


def check_risks(plan: Plan) -> HardCheckResult:
    count = len(plan.risks)
    return HardCheckResult(
        check_name="has_risks",
        passed=count > 0,
        message=f"Identified {count} risks"
        if count
        else "No risks identified - consider potential issues",
        severity="warning",
    )


HARD_CHECKS: tuple[Callable[[Plan], HardCheckResult], ...] = (
    check_acceptance_criteria,
    check_phases,
    check_phases_have_tasks,
    check_file_references,
    check_task_descriptions,
    check_risks,
)


def run_hard_checks(plan: Plan) -> list[HardCheckResult]:
    """Run every hard check in order. The plan is only read."""
    return [check(plan) for check in HARD_CHECKS]


def summarize_checks(results: list[HardCheckResult]) -> str:
    lines = []
    for result in results:
        mark = "PASS" if result.passed else "FAIL"
        lines.append(f"- [{mark}] {result.check_name} ({result.severity}): {result.message}")
    return "\n".join(lines)
