"""Review results produced by the hard checklist and the LLM reviewer."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from planforge.plan import Priority, Severity

_HARD_PREFIX = {"error": "[MUST FIX]", "warning": "[SHOULD FIX]", "info": "[CONSIDER]"}
_GAP_PREFIX = {"error": "[CRITICAL]", "warning": "[SHOULD FIX]", "info": "[CONSIDER]"}


class HardCheckResult(BaseModel):
    check_name: str
    passed: bool
    message: str
    severity: Severity


class Gap(BaseModel):
    description: str
    location: str | None = None
    severity: Severity = "warning"
    suggested_fix: str | None = None


class UnclearArea(BaseModel):
    description: str
    questions: list[str] = Field(default_factory=list)


class Suggestion(BaseModel):
    description: str
    rationale: str = ""
    priority: Priority = "recommended"


class LlmReview(BaseModel):
    overall_assessment: str = ""
    gaps: list[Gap] = Field(default_factory=list)
    unclear_areas: list[UnclearArea] = Field(default_factory=list)
    suggestions: list[Suggestion] = Field(default_factory=list)
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    requires_human_input: bool = False
    human_input_reason: str | None = None


class ReviewResult(BaseModel):
    passed: bool = False
    hard_check_results: list[HardCheckResult] = Field(default_factory=list)
    llm_review: LlmReview = Field(default_factory=LlmReview)
    summary: str = ""

    @property
    def score(self) -> float:
        return self.llm_review.score

    def has_blocking_failures(self) -> bool:
        return any(
            not check.passed and check.severity == "error" for check in self.hard_check_results
        )

    def calculate_passed(self, threshold: float) -> bool:
        """Recompute ``passed`` from error-level checks and the score threshold."""
        self.passed = not self.has_blocking_failures() and self.llm_review.score >= threshold
        return self.passed

    def extract_feedback(self) -> list[str]:
        """Turn failed checks, gaps and unclear areas into planner feedback lines."""
        feedback: list[str] = []
        for check in self.hard_check_results:
            if check.passed:
                continue
            prefix = _HARD_PREFIX[check.severity]
            feedback.append(f"{prefix} {check.check_name}: {check.message}")
        for gap in self.llm_review.gaps:
            feedback.append(f"{_GAP_PREFIX[gap.severity]} {gap.description}")
            if gap.suggested_fix:
                feedback.append(f"  Suggested: {gap.suggested_fix}")
        for area in self.llm_review.unclear_areas:
            feedback.append(f"[CLARIFY] {area.description}")
            for question in area.questions:
                feedback.append(f"  - {question}")
        return feedback


def validate_review_payload(payload: Any) -> ReviewResult:
    """Accept either a full ReviewResult or a bare LLM review object."""
    try:
        if isinstance(payload, dict) and "llm_review" not in payload:
            return ReviewResult(llm_review=LlmReview.model_validate(payload))
        return ReviewResult.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
