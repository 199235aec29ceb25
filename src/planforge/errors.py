"""Error taxonomy for plan-forge."""

from __future__ import annotations

from typing import Any


class PlanForgeError(RuntimeError):
    """Base class for plan-forge failures."""


class ConfigError(PlanForgeError, ValueError):
    """Raised when configuration or a recipe is invalid or missing."""


class PhaseError(PlanForgeError):
    """Raised when the planner or reviewer fails or returns malformed output."""


class PersistenceError(PlanForgeError):
    """Raised when session files cannot be written or read back."""


class SessionLockedError(PersistenceError):
    """Raised when another worker already drives the session."""


class HumanInputRequired(PlanForgeError):
    """Pause signal carrying the session slug and the resume command."""

    def __init__(
        self,
        slug: str,
        reason: str,
        question: str | None = None,
        runs_dir: str = ".plan-forge",
        active_dir: str = "dev/active",
    ) -> None:
        self.slug = slug
        self.reason = reason
        self.question = question or reason
        self.runs_dir = runs_dir.rstrip("/")
        self.active_dir = active_dir.rstrip("/")
        super().__init__(self.render())

    @property
    def resume_command(self) -> str:
        return f'plan-forge run --path {self.runs_dir}/{self.slug} --task "your response"'

    def render(self) -> str:
        return (
            f"Human input required: {self.reason}\n\n"
            f"Review the plan at: {self.active_dir}/{self.slug}/\n"
            f"Resume with: {self.resume_command}"
        )


class GuardrailStop(PlanForgeError):
    """Terminal guardrail decision surfaced as an exception by callers that want one."""

    def __init__(self, hard_stop: Any) -> None:
        self.hard_stop = hard_stop
        super().__init__(hard_stop.describe())
