"""Read-only FastAPI service over session directories and their rendered plans."""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from planforge.config import EnvSettings, ForgeConfig, apply_env
from planforge.errors import ConfigError
from planforge.output import read_plan_document
from planforge.status import SessionInfo, derive_status, list_sessions


class SessionList(BaseModel):
    runs_dir: str
    sessions: list[SessionInfo]


def create_app(config: ForgeConfig | None = None) -> FastAPI:
    config = config or apply_env(ForgeConfig(), EnvSettings())
    runs_dir = Path(config.output.runs_dir)
    active_dir = Path(config.output.active_dir)
    guardrails = config.guardrails
    app = FastAPI(title="plan-forge")

    def _derive(slug: str) -> SessionInfo:
        return derive_status(
            runs_dir / slug,
            threshold=guardrails.score_threshold,
            max_iterations=guardrails.max_iterations,
            max_total_tokens=guardrails.max_total_tokens,
        )

    @app.get("/sessions", response_model=SessionList)
    async def get_sessions() -> SessionList:
        return SessionList(
            runs_dir=str(runs_dir),
            sessions=[_derive(slug) for slug in list_sessions(runs_dir)],
        )

    @app.get("/sessions/{slug}", response_model=SessionInfo)
    async def get_session(slug: str) -> SessionInfo:
        if slug not in list_sessions(runs_dir):
            raise HTTPException(status_code=404, detail=f"Unknown session {slug}")
        return _derive(slug)

    @app.get("/sessions/{slug}/plan", response_class=PlainTextResponse)
    async def get_plan(slug: str, file: str = "plan") -> str:
        if slug not in list_sessions(runs_dir):
            raise HTTPException(status_code=404, detail=f"Unknown session {slug}")
        try:
            text = read_plan_document(active_dir, slug, file)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if text is None:
            raise HTTPException(status_code=404, detail=f"No {file} document for {slug}")
        return text

    return app


app = create_app()
