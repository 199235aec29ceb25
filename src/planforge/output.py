"""Artifact writers for intermediate, review and final plan files."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
from pathlib import Path
import re
from typing import Any, Literal

from planforge.errors import ConfigError, PersistenceError
from planforge.plan import Plan
from planforge.review import ReviewResult
from planforge.util.logging import get_logger
from planforge.viability.dag import analyze_dag

FinalStatus = Literal["approved", "best_effort", "draft"]
PLAN_DOCUMENTS = ("plan", "tasks", "context")

_RISK_TAG = {"error": "[HIGH]", "warning": "[MEDIUM]", "info": "[LOW]"}


def slugify(text: str, max_length: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "plan"


def _write_text(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed to write {path}: {exc}") from exc


def _write_json(path: Path, payload: Any) -> None:
    _write_text(path, json.dumps(payload, indent=2, ensure_ascii=False))


class OutputWriter(ABC):
    """Where the loop controller puts its artifacts."""

    @abstractmethod
    def write_intermediate(self, plan: Plan, iteration: int) -> Path:
        raise NotImplementedError

    @abstractmethod
    def write_review(self, review: ReviewResult, iteration: int) -> Path:
        raise NotImplementedError

    @abstractmethod
    def write_final(
        self, plan: Plan, status: FinalStatus = "approved", score: float | None = None
    ) -> list[Path]:
        raise NotImplementedError


class FileOutputWriter(OutputWriter):
    """Writes JSON artifacts to the session directory and markdown to the active directory."""

    def __init__(self, session_dir: Path, active_dir: Path, slug: str) -> None:
        self.session_dir = Path(session_dir)
        self.active_dir = Path(active_dir)
        self.slug = slug
        self.logger = get_logger("planforge.output")

    @property
    def task_dir(self) -> Path:
        return self.active_dir / self.slug

    def write_intermediate(self, plan: Plan, iteration: int) -> Path:
        path = self.session_dir / f"plan-iteration-{iteration}.json"
        _write_json(path, plan.to_json())
        self.logger.info("output.plan path=%s", path)
        return path

    def write_review(self, review: ReviewResult, iteration: int) -> Path:
        path = self.session_dir / f"review-iteration-{iteration}.json"
        _write_json(path, review.model_dump(mode="json"))
        self.logger.info("output.review path=%s", path)
        return path

    def write_final(
        self, plan: Plan, status: FinalStatus = "approved", score: float | None = None
    ) -> list[Path]:
        task_dir = self.task_dir
        written: list[Path] = []
        documents = {
            f"{self.slug}-plan.md": render_plan(plan, status, score),
            f"{self.slug}-tasks.md": render_tasks(plan),
            f"{self.slug}-context.md": render_context(plan),
        }
        for name, text in documents.items():
            path = task_dir / name
            _write_text(path, text)
            written.append(path)
        if plan.instructions:
            dag_path = task_dir / f"{self.slug}-dag.json"
            _write_json(
                dag_path,
                {
                    "goal": plan.effective_goal,
                    "reasoning": plan.reasoning,
                    "instructions": [
                        item.model_dump(mode="json") for item in plan.instructions
                    ],
                },
            )
            written.append(dag_path)
        final_path = self.session_dir / f"{self.slug}-final.json"
        _write_json(final_path, plan.to_json())
        written.append(final_path)
        self.logger.info("output.final dir=%s status=%s", task_dir, status)
        return written


def _status_line(status: FinalStatus, score: float | None) -> str:
    if status == "draft":
        return "**Status:** DRAFT - Awaiting Human Input"
    if status == "best_effort":
        return f"**Status:** Best Effort (score {score or 0.0:.2f})"
    return "**Status:** Approved"


def render_plan(plan: Plan, status: FinalStatus = "approved", score: float | None = None) -> str:
    lines = [f"# {plan.title}", "", _status_line(status, score), ""]
    lines.append(f"**Tier:** {plan.tier}  ")
    lines.append(f"**Version:** {plan.metadata.version} (iteration {plan.metadata.iteration})")
    lines.append("")
    if plan.description:
        lines.extend([plan.description, ""])
    lines.extend(["## Goal", "", plan.effective_goal, ""])
    lines.extend(["## Phases", ""])
    for index, phase in enumerate(plan.phases, start=1):
        lines.append(f"### Phase {index}: {phase.name} ({phase.tier})")
        if phase.goal:
            lines.append(f"Goal: {phase.goal}")
        if phase.dependencies:
            lines.append(f"Depends on: {', '.join(phase.dependencies)}")
        lines.append("")
        for checkpoint in phase.checkpoints:
            lines.append(f"- [ ] **{checkpoint.id}**: {checkpoint.description}")
            if checkpoint.validation:
                lines.append(f"  - Validation: {checkpoint.validation}")
        lines.append("")
    lines.extend(["## Acceptance Criteria", ""])
    for criterion in plan.acceptance_criteria:
        lines.append(f"- [ ] {criterion.description} ({criterion.priority})")
    lines.append("")
    lines.extend(["## Risks", ""])
    for risk in plan.risks:
        lines.append(f"- {_RISK_TAG[risk.severity]} {risk.description}")
        if risk.mitigation:
            lines.append(f"  - Mitigation: {risk.mitigation}")
    lines.append("")
    if plan.instructions:
        lines.extend(["## Instructions", ""])
        metrics = analyze_dag(plan.instructions)
        table = metrics.to_markdown()
        if table:
            lines.extend([table, ""])
        for index, item in enumerate(plan.instructions, start=1):
            lines.append(f"{index}. **{item.id}** (`{item.op.value}`) {item.description}".rstrip())
            if item.dependencies:
                lines.append(f"   - Depends on: {', '.join(item.dependencies)}")
            if item.estimated_tokens is not None:
                lines.append(f"   - Estimated tokens: {item.estimated_tokens}")
        lines.append("")
    return "\n".join(lines)


def render_tasks(plan: Plan) -> str:
    lines = [f"# {plan.title} - Tasks", ""]
    for phase in plan.phases:
        lines.extend([f"## {phase.name}", ""])
        for checkpoint in phase.checkpoints:
            lines.append(f"### {checkpoint.id}: {checkpoint.description}")
            for task in checkpoint.tasks:
                lines.append(f"- [ ] {task.description}")
                for ref in task.file_references:
                    lines.append(f"  - `{ref}`")
                if task.implementation_notes:
                    lines.append(f"  - Notes: {task.implementation_notes}")
            lines.append("")
    return "\n".join(lines)


def render_context(plan: Plan) -> str:
    context = plan.context
    lines = [f"# {plan.title} - Context", "", "## Problem Statement", ""]
    lines.extend([context.problem_statement or "(none)", ""])
    for heading, items in (
        ("Constraints", context.constraints),
        ("Assumptions", context.assumptions),
        ("Existing Patterns", context.existing_patterns),
    ):
        if items:
            lines.extend([f"## {heading}", ""])
            lines.extend(f"- {item}" for item in items)
            lines.append("")
    if plan.reasoning:
        lines.extend(["## Reasoning", "", plan.reasoning, ""])
    if plan.file_references:
        lines.extend(["## File References", "", "| Path | Action | Description |", "|---|---|---|"])
        for ref in plan.file_references:
            lines.append(f"| `{ref.path}` | {ref.action} | {ref.description} |")
        lines.append("")
    snapshot = plan.grounding_snapshot
    if snapshot is not None:
        lines.extend(["## Grounding Evidence", "", "| File | Exists |", "|---|---|"])
        for verified in snapshot.verified_files:
            lines.append(f"| `{verified.path}` | {'yes' if verified.exists else 'no'} |")
        for target in snapshot.verified_targets:
            lines.append(f"| `{target.target}` | {'resolves' if target.resolves else 'missing'} |")
        lines.append("")
    if plan.operator_runbook:
        lines.extend(["## Operator Runbook", "", plan.operator_runbook, ""])
    return "\n".join(lines)


def read_plan_document(active_dir: Path, slug: str, kind: str) -> str | None:
    """Return one rendered ``<slug>-<kind>.md`` document, or None if it was never written."""
    if kind not in PLAN_DOCUMENTS:
        expected = ", ".join(PLAN_DOCUMENTS)
        raise ConfigError(f"Unknown plan file {kind!r}; expected one of {expected}.")
    path = Path(active_dir) / slug / f"{slug}-{kind}.md"
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")
