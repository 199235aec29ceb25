"""Persistent orchestration state for one plan-review session."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from planforge.errors import GuardrailStop, PersistenceError
from planforge.plan import Plan, utc_now
from planforge.review import ReviewResult

SCHEMA_VERSION = 2
STATE_FILE = "orchestration-state.json"
STATE_TMP_FILE = f".{STATE_FILE}.tmp"
CONTEXT_SUMMARY_LIMIT = 2000

HardStopKind = Literal[
    "execution_error",
    "token_budget_exhausted",
    "max_iterations",
    "max_tool_calls",
    "execution_timeout",
]
StatusKind = Literal[
    "ready",
    "running",
    "completed",
    "completed_best_effort",
    "paused",
    "failed",
    "hard_stopped",
]
IterationOutcome = Literal[
    "viability_failed",
    "review_failed",
    "review_passed",
    "human_input_requested",
    "phase_error",
]


class HardStop(BaseModel):
    """A fired guardrail. Only the fields relevant to ``kind`` are set."""

    kind: HardStopKind
    used: int | None = None
    limit: float | None = None
    iteration: int | None = None
    calls: int | None = None
    elapsed: float | None = None
    message: str | None = None

    @classmethod
    def execution_error(cls, message: str) -> "HardStop":
        return cls(kind="execution_error", message=message)

    @classmethod
    def token_budget(cls, used: int, limit: int) -> "HardStop":
        return cls(kind="token_budget_exhausted", used=used, limit=limit)

    @classmethod
    def max_iterations(cls, iteration: int, limit: int) -> "HardStop":
        return cls(kind="max_iterations", iteration=iteration, limit=limit)

    @classmethod
    def max_tool_calls(cls, calls: int, limit: int) -> "HardStop":
        return cls(kind="max_tool_calls", calls=calls, limit=limit)

    @classmethod
    def timeout(cls, elapsed: float, limit: float) -> "HardStop":
        return cls(kind="execution_timeout", elapsed=elapsed, limit=limit)

    def describe(self) -> str:
        if self.kind == "execution_error":
            return f"Execution error: {self.message}"
        if self.kind == "token_budget_exhausted":
            return f"Token budget exhausted: {self.used} used of {int(self.limit or 0)}"
        if self.kind == "max_iterations":
            return f"Max iterations reached: {self.iteration} of {int(self.limit or 0)}"
        if self.kind == "max_tool_calls":
            return f"Max tool calls reached: {self.calls} of {int(self.limit or 0)}"
        return f"Execution timeout: {self.elapsed:.0f}s elapsed, limit {self.limit:.0f}s"


class OrchestrationStatus(BaseModel):
    kind: StatusKind = "ready"
    reason: str | None = None
    error: str | None = None
    hard_stop: HardStop | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in {"completed", "completed_best_effort", "failed", "hard_stopped"}


class TokenBreakdown(BaseModel):
    orchestrator_input: int = 0
    orchestrator_output: int = 0
    planner_input: int = 0
    planner_output: int = 0
    reviewer_input: int = 0
    reviewer_output: int = 0
    total: int = 0
    estimated: bool = False

    def overhead_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.orchestrator_input + self.orchestrator_output) / self.total

    def add_planner(self, input_tokens: int, output_tokens: int) -> None:
        self.planner_input += input_tokens
        self.planner_output += output_tokens
        self.total += input_tokens + output_tokens

    def add_reviewer(self, input_tokens: int, output_tokens: int) -> None:
        self.reviewer_input += input_tokens
        self.reviewer_output += output_tokens
        self.total += input_tokens + output_tokens


class HumanInputRecord(BaseModel):
    question: str
    category: str = "clarification"
    reason: str | None = None
    response: str | None = None
    approved: bool = False
    iteration: int = 0
    timestamp: str = Field(default_factory=utc_now)


class IterationRecord(BaseModel):
    iteration: int
    timestamp: str = Field(default_factory=utc_now)
    viability_critical: int = 0
    viability_warning: int = 0
    review_score: float | None = None
    review_passed: bool = False
    tool_calls: int = 0
    tokens: int = 0
    outcome: IterationOutcome = "review_failed"


class ResumeState(BaseModel):
    plan: Plan
    feedback: list[str] = Field(default_factory=list)
    start_iteration: int = 1


class LoopResult(BaseModel):
    final_plan: Plan | None = None
    total_iterations: int = 0
    final_review: ReviewResult | None = None
    success: bool = False
    best_score: float = 0.0
    total_tokens: int = 0
    status: OrchestrationStatus = Field(default_factory=OrchestrationStatus)

    def raise_for_stop(self) -> None:
        """Raise GuardrailStop when a hard stop ended the run with nothing worth keeping."""
        if self.status.kind == "hard_stopped" and self.status.hard_stop is not None:
            raise GuardrailStop(self.status.hard_stop)


def _clean_count(value: int | None) -> int:
    if value is None or value < 0:
        return 0
    return int(value)


class OrchestrationState(BaseModel):
    schema_version: int = SCHEMA_VERSION
    session_id: str
    task: str
    working_dir: str | None = None
    task_slug: str
    iteration: int = 0
    turn_base: int = 0
    total_tokens: int = 0
    token_breakdown: TokenBreakdown = Field(default_factory=TokenBreakdown)
    tool_calls: int = 0
    start_time_iso: str = Field(default_factory=utc_now)
    status: OrchestrationStatus = Field(default_factory=OrchestrationStatus)
    current_plan: dict[str, Any] | None = None
    best_plan: dict[str, Any] | None = None
    best_score: float = 0.0
    reviews: list[dict[str, Any]] = Field(default_factory=list)
    pending_feedback: list[str] = Field(default_factory=list)
    pending_human_input: HumanInputRecord | None = None
    human_inputs: list[HumanInputRecord] = Field(default_factory=list)
    triggered_conditions: list[str] = Field(default_factory=list)
    iteration_history: list[IterationRecord] = Field(default_factory=list)
    consecutive_phase_errors: int = 0
    last_error: str | None = None
    last_review_passed: bool = False
    context_summary: str = ""

    @classmethod
    def new(
        cls,
        session_id: str,
        task: str,
        task_slug: str,
        working_dir: str | None = None,
    ) -> "OrchestrationState":
        return cls(
            session_id=session_id,
            task=task,
            task_slug=task_slug,
            working_dir=working_dir,
        )

    # -- persistence -----------------------------------------------------

    def save(self, session_dir: Path) -> Path:
        """Write the state atomically: fixed temp file beside the target, fsync, rename.

        The session lock guarantees one writer per session directory, so the
        temp name never collides and a crashed run leaves at most one stale file
        that the next save overwrites.
        """
        session_dir = Path(session_dir)
        target = session_dir / STATE_FILE
        tmp_path = session_dir / STATE_TMP_FILE
        self.schema_version = SCHEMA_VERSION
        payload = self.model_dump_json(indent=2)
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write {target}: {exc}") from exc
        return target

    @classmethod
    def load(cls, session_dir: Path) -> "OrchestrationState | None":
        """Load the state file, or None when the session has none yet."""
        path = Path(session_dir) / STATE_FILE
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Unreadable state file {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise PersistenceError(f"State file {path} is not a JSON object")
        version = raw.get("schema_version")
        if version != SCHEMA_VERSION:
            raise PersistenceError(
                f"State file {path} has schema version {version!r}, expected {SCHEMA_VERSION}"
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise PersistenceError(f"Invalid state file {path}: {exc}") from exc

    # -- counters ----------------------------------------------------------

    def add_tokens(
        self,
        planner: tuple[int | None, int | None] | None = None,
        reviewer: tuple[int | None, int | None] | None = None,
    ) -> None:
        """Add (input, output) token counts; missing or negative counts add nothing."""
        if planner is not None:
            self.token_breakdown.add_planner(_clean_count(planner[0]), _clean_count(planner[1]))
        if reviewer is not None:
            self.token_breakdown.add_reviewer(_clean_count(reviewer[0]), _clean_count(reviewer[1]))
        self.total_tokens = self.token_breakdown.total

    def add_tool_calls(self, count: int | None) -> None:
        self.tool_calls += _clean_count(count)

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        try:
            started = datetime.fromisoformat(self.start_time_iso)
        except ValueError:
            return 0.0
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return (current - started).total_seconds()

    def turns(self) -> int:
        """Iterations counted against the iteration limit since the last turn reset."""
        return max(0, self.iteration - self.turn_base)

    # -- plans and reviews ---------------------------------------------------

    def set_current_plan(self, plan: Plan) -> None:
        self.current_plan = plan.to_json()

    def record_review(self, review: ReviewResult) -> bool:
        """Store a review and promote the current plan when the score improves."""
        self.reviews.append(review.model_dump(mode="json"))
        self.last_review_passed = review.passed
        if review.score > self.best_score:
            self.best_score = review.score
            self.best_plan = self.current_plan
            return True
        return False

    def plan(self) -> Plan | None:
        if self.current_plan is None:
            return None
        return Plan.model_validate(self.current_plan)

    def best(self) -> Plan | None:
        if self.best_plan is None:
            return None
        return Plan.model_validate(self.best_plan)

    def add_conditions(self, names: list[str]) -> None:
        for name in names:
            if name not in self.triggered_conditions:
                self.triggered_conditions.append(name)

    # -- human input -------------------------------------------------------

    def request_human_input(self, question: str, category: str, reason: str | None) -> None:
        self.pending_human_input = HumanInputRecord(
            question=question,
            category=category,
            reason=reason,
            iteration=self.iteration,
        )
        self.status = OrchestrationStatus(kind="paused", reason=reason or question)

    def apply_human_response(self, response: str, approved: bool = False) -> HumanInputRecord | None:
        """Answer the pending request, archive it and resume the session."""
        record = self.pending_human_input
        if record is None:
            return None
        record.response = response
        record.approved = approved
        self.human_inputs.append(record)
        self.pending_human_input = None
        self.status = OrchestrationStatus(kind="running")
        return record

    def approved_categories(self) -> set[str]:
        return {record.category for record in self.human_inputs if record.approved}

    # -- resume ------------------------------------------------------------

    def can_resume(self) -> bool:
        return self.status.kind != "hard_stopped"

    def resume_state(self, feedback: list[str] | None = None) -> ResumeState | None:
        plan = self.plan()
        if plan is None:
            return None
        return ResumeState(
            plan=plan,
            feedback=list(feedback or []),
            start_iteration=self.iteration + 1,
        )

    def generate_context_summary(self) -> str:
        lines = [f"Task: {self.task[:200]}", f"Iteration: {self.iteration}"]
        lines.append(f"Total tokens: {self.total_tokens}")
        if self.reviews:
            last_summary = self.reviews[-1].get("summary")
            if isinstance(last_summary, str) and last_summary:
                lines.append(f"Last review: {last_summary[:200]}")
        for record in self.human_inputs:
            if record.approved:
                lines.append(
                    f"Human approved {record.reason or '(unknown reason)'}:"
                    f" {record.response or '(no response)'}"
                )
        summary = "\n".join(lines)
        if len(summary) > CONTEXT_SUMMARY_LIMIT:
            summary = summary[: CONTEXT_SUMMARY_LIMIT - 3] + "..."
        self.context_summary = summary
        return summary
