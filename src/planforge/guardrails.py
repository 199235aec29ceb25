"""Deterministic hard stops and mandatory human-approval conditions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any

from planforge.state import HardStop, OrchestrationState

SECURITY_KEYWORDS = (
    "credential",
    "auth",
    "encrypt",
    "secret",
    "token",
    "password",
    "api_key",
    "private_key",
    "certificate",
)
SENSITIVE_FILE_PATTERNS = (
    "*.env",
    "*.env.*",
    "*secret*",
    "*credential*",
    "*.pem",
    "*.key",
    "**/secrets/**",
)
BREAKING_API_PATTERNS = (
    "pub fn",
    "pub struct",
    "pub enum",
    "pub trait",
    "public api",
    "function signature",
)
BREAKING_API_ACTIONS = ("modify", "change", "update", "refactor")
DATA_DELETION_PATTERNS = ("DROP TABLE", "DELETE FROM", "TRUNCATE", "rm -rf", "shutil.rmtree")

SECURITY_SENSITIVE = "security_sensitive"
SENSITIVE_FILE_PATTERN = "sensitive_file_pattern"
LOW_SCORE = "low_score"
ITERATION_SOFT_LIMIT = "iteration_soft_limit"
BREAKING_API_CHANGES = "breaking_api_changes"
DATA_DELETION = "data_deletion"


@dataclass(frozen=True)
class GuardrailLimits:
    max_iterations: int = 10
    max_total_tokens: int = 500_000
    max_tool_calls: int = 100
    execution_timeout_secs: float = 600
    max_phase_errors: int = 3


@dataclass(frozen=True)
class TriggeredCondition:
    name: str
    details: list[str] = field(default_factory=list)


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [text for item in value for text in _strings(item)]
    if isinstance(value, dict):
        return [text for item in value.values() for text in _strings(item)]
    return []


def _matches_sensitive_path(path: str) -> bool:
    lowered = path.lower()
    for pattern in SENSITIVE_FILE_PATTERNS:
        if fnmatchcase(lowered, pattern):
            return True
    return "/secrets/" in f"/{lowered}"


class Guardrails:
    """Pure checks over an OrchestrationState; nothing here mutates or blocks."""

    def __init__(
        self,
        limits: GuardrailLimits | None = None,
        iteration_soft_limit: int = 7,
        low_score_threshold: float = 0.5,
    ) -> None:
        self.limits = limits or GuardrailLimits()
        self.iteration_soft_limit = iteration_soft_limit
        self.low_score_threshold = low_score_threshold

    # -- hard stops --------------------------------------------------------

    def check(self, state: OrchestrationState, now: datetime | None = None) -> HardStop | None:
        """Return the first fired hard stop in priority order, if any."""
        limits = self.limits
        if state.consecutive_phase_errors >= max(1, limits.max_phase_errors):
            return HardStop.execution_error(state.last_error or "repeated phase errors")
        if limits.max_total_tokens >= 0 and state.total_tokens > limits.max_total_tokens:
            return HardStop.token_budget(state.total_tokens, limits.max_total_tokens)
        if state.turns() >= limits.max_iterations:
            return HardStop.max_iterations(state.turns(), limits.max_iterations)
        if state.tool_calls >= limits.max_tool_calls:
            return HardStop.max_tool_calls(state.tool_calls, limits.max_tool_calls)
        elapsed = state.elapsed_seconds(now)
        if elapsed >= limits.execution_timeout_secs:
            return HardStop.timeout(elapsed, limits.execution_timeout_secs)
        return None

    # -- mandatory conditions ---------------------------------------------

    def check_security_sensitive(self, plan_json: dict[str, Any]) -> TriggeredCondition | None:
        found: list[str] = []
        for text in _strings(plan_json):
            lowered = text.lower()
            for keyword in SECURITY_KEYWORDS:
                if keyword in lowered and keyword not in found:
                    found.append(keyword)
        return TriggeredCondition(SECURITY_SENSITIVE, found) if found else None

    def check_sensitive_files(self, plan_json: dict[str, Any]) -> TriggeredCondition | None:
        files: list[str] = []
        for text in _strings(plan_json):
            if not any(mark in text for mark in ("/", "\\", ".")):
                continue
            if _matches_sensitive_path(text) and text not in files:
                files.append(text)
        return TriggeredCondition(SENSITIVE_FILE_PATTERN, files) if files else None

    def check_low_score(self, score: float) -> TriggeredCondition | None:
        if score < self.low_score_threshold:
            return TriggeredCondition(LOW_SCORE, [f"{score:.2f} < {self.low_score_threshold:.2f}"])
        return None

    def check_iteration_limit(self, iteration: int) -> TriggeredCondition | None:
        if iteration >= self.iteration_soft_limit:
            return TriggeredCondition(
                ITERATION_SOFT_LIMIT, [f"{iteration} >= {self.iteration_soft_limit}"]
            )
        return None

    def check_breaking_api_changes(self, plan_json: dict[str, Any]) -> TriggeredCondition | None:
        locations: list[str] = []
        for text in _strings(plan_json):
            lowered = text.lower()
            if not any(action in lowered for action in BREAKING_API_ACTIONS):
                continue
            if any(pattern in lowered for pattern in BREAKING_API_PATTERNS):
                snippet = text[:60]
                if snippet not in locations:
                    locations.append(snippet)
        return TriggeredCondition(BREAKING_API_CHANGES, locations) if locations else None

    def check_data_deletion(self, plan_json: dict[str, Any]) -> TriggeredCondition | None:
        operations: list[str] = []
        for text in _strings(plan_json):
            lowered = text.lower()
            if any(pattern.lower() in lowered for pattern in DATA_DELETION_PATTERNS):
                snippet = text[:60]
                if snippet not in operations:
                    operations.append(snippet)
        return TriggeredCondition(DATA_DELETION, operations) if operations else None

    def check_all_conditions(
        self, plan_json: dict[str, Any], score: float, iteration: int
    ) -> list[TriggeredCondition]:
        checks = (
            self.check_security_sensitive(plan_json),
            self.check_sensitive_files(plan_json),
            self.check_low_score(score),
            self.check_iteration_limit(iteration),
            self.check_breaking_api_changes(plan_json),
            self.check_data_deletion(plan_json),
        )
        return [condition for condition in checks if condition is not None]

    def check_before_finalize(
        self, plan_json: dict[str, Any], state: OrchestrationState
    ) -> list[TriggeredCondition]:
        """Conditions that still lack an approved human-input record."""
        score = 0.0
        if state.reviews:
            score = float(state.reviews[-1].get("llm_review", {}).get("score", 0.0))
        approved = state.approved_categories()
        return [
            condition
            for condition in self.check_all_conditions(plan_json, score, state.iteration)
            if condition.name not in approved
        ]
