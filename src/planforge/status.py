"""Session status derived only from the files in a session directory."""

from __future__ import annotations

import json
from pathlib import Path
import re
from typing import Any, Literal

from pydantic import BaseModel

from planforge.errors import PersistenceError
from planforge.state import HardStop, OrchestrationState

SessionStatusKind = Literal[
    "ready",
    "in_progress",
    "needs_input",
    "approved",
    "best_effort",
    "max_turns",
    "paused_for_human_input",
    "hard_stopped",
]

_PLAN_FILE_RE = re.compile(r"^plan-iteration-(\d+)\.json$")
_REVIEW_FILE_RE = re.compile(r"^review-iteration-(\d+)\.json$")

_STATE_TO_SESSION: dict[str, SessionStatusKind] = {
    "ready": "ready",
    "running": "in_progress",
    "completed": "approved",
    "completed_best_effort": "best_effort",
    "paused": "needs_input",
}


class SessionStatus(BaseModel):
    kind: SessionStatusKind
    question: str | None = None
    category: str | None = None
    hard_stop: HardStop | None = None

    def __str__(self) -> str:
        return self.kind


class SessionInfo(BaseModel):
    session_id: str
    session_dir: str
    iteration: int = 0
    status: SessionStatus
    latest_score: float | None = None
    input_reason: str | None = None
    title: str | None = None
    total_tokens: int | None = None
    tokens_remaining: int | None = None


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def _latest(session_dir: Path, pattern: re.Pattern[str]) -> tuple[int, Path | None]:
    highest = 0
    latest_path: Path | None = None
    if not session_dir.is_dir():
        return 0, None
    for entry in session_dir.iterdir():
        match = pattern.match(entry.name)
        if match and int(match.group(1)) > highest:
            highest = int(match.group(1))
            latest_path = entry
    return highest, latest_path


def _plan_title(payload: Any) -> str | None:
    if isinstance(payload, dict) and isinstance(payload.get("title"), str):
        return payload["title"]
    return None


def _remaining(used: int, max_total_tokens: int) -> int | None:
    if max_total_tokens < 0:
        return None
    return max(0, max_total_tokens - used)


def _from_state(
    session_dir: Path, state: OrchestrationState, max_total_tokens: int
) -> SessionInfo:
    kind = state.status.kind
    if kind == "hard_stopped":
        status = SessionStatus(kind="hard_stopped", hard_stop=state.status.hard_stop)
    elif kind == "failed":
        status = SessionStatus(
            kind="hard_stopped",
            hard_stop=HardStop.execution_error(state.status.error or "unknown error"),
        )
    else:
        status = SessionStatus(kind=_STATE_TO_SESSION[kind])
    if state.pending_human_input is not None:
        status = SessionStatus(
            kind="paused_for_human_input",
            question=state.pending_human_input.question,
            category=state.pending_human_input.category,
        )
    latest_score = None
    if state.reviews:
        latest_score = state.reviews[-1].get("llm_review", {}).get("score")
    title = _plan_title(state.current_plan)
    input_reason = state.pending_human_input.reason if state.pending_human_input else None
    return SessionInfo(
        session_id=session_dir.name,
        session_dir=str(session_dir),
        iteration=state.iteration,
        status=status,
        latest_score=latest_score,
        input_reason=input_reason or state.status.reason,
        title=title,
        total_tokens=state.total_tokens,
        tokens_remaining=_remaining(state.total_tokens, max_total_tokens),
    )


def _from_files(session_dir: Path, threshold: float, max_iterations: int) -> SessionInfo:
    plan_iteration, plan_path = _latest(session_dir, _PLAN_FILE_RE)
    if plan_path is None:
        return SessionInfo(
            session_id=session_dir.name,
            session_dir=str(session_dir),
            status=SessionStatus(kind="ready"),
        )
    title = _plan_title(_read_json(plan_path))
    review_iteration, review_path = _latest(session_dir, _REVIEW_FILE_RE)
    review = _read_json(review_path) if review_path is not None else None
    llm_review = review.get("llm_review") if isinstance(review, dict) else None
    score = None
    reason = None
    if not isinstance(llm_review, dict):
        status = SessionStatus(kind="in_progress")
    else:
        score = llm_review.get("score")
        needs_input = bool(llm_review.get("requires_human_input"))
        if needs_input:
            status = SessionStatus(kind="needs_input")
            reason = llm_review.get("human_input_reason")
        elif isinstance(score, (int, float)) and score >= threshold:
            status = SessionStatus(kind="approved")
        elif review_iteration >= max_iterations:
            status = SessionStatus(kind="max_turns")
        else:
            status = SessionStatus(kind="in_progress")
    return SessionInfo(
        session_id=session_dir.name,
        session_dir=str(session_dir),
        iteration=max(plan_iteration, review_iteration),
        status=status,
        latest_score=score if isinstance(score, (int, float)) else None,
        input_reason=reason,
        title=title,
    )


def derive_status(
    session_dir: Path,
    threshold: float = 0.8,
    max_iterations: int = 10,
    max_total_tokens: int = 500_000,
) -> SessionInfo:
    """Project a session directory onto a SessionInfo without any in-memory state.

    The orchestration state file wins when present; otherwise the plan and
    review iteration files are scanned. A state file that cannot be loaded is
    reported as a hard stop carrying the load error.
    """
    session_dir = Path(session_dir)
    try:
        state = OrchestrationState.load(session_dir)
    except PersistenceError as exc:
        return SessionInfo(
            session_id=session_dir.name,
            session_dir=str(session_dir),
            status=SessionStatus(kind="hard_stopped", hard_stop=HardStop.execution_error(str(exc))),
        )
    if state is not None:
        return _from_state(session_dir, state, max_total_tokens)
    return _from_files(session_dir, threshold, max_iterations)


def list_sessions(runs_dir: Path) -> list[str]:
    """Session directory names under ``runs_dir``, newest first."""
    runs_dir = Path(runs_dir)
    if not runs_dir.is_dir():
        return []
    entries = [
        entry
        for entry in runs_dir.iterdir()
        if entry.is_dir() and not entry.name.startswith(".")
    ]
    entries.sort(key=lambda entry: entry.stat().st_mtime, reverse=True)
    return [entry.name for entry in entries]
