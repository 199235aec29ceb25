"""Command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import re
import sys
from typing import Any

from planforge.config import EnvSettings, ForgeConfig, clamp_threshold, resolve_config
from planforge.errors import ConfigError, GuardrailStop, HumanInputRequired, PlanForgeError
from planforge.factory import build_controller, session_dir_for
from planforge.output import FileOutputWriter, slugify
from planforge.plan import Plan, validate_plan_payload
from planforge.registry import DEFAULT_REGISTRY
from planforge.state import LoopResult, OrchestrationState, OrchestrationStatus, ResumeState
from planforge.status import derive_status, list_sessions
from planforge.util.logging import set_verbosity

EXIT_APPROVED = 0
EXIT_ERROR = 1
EXIT_HUMAN_INPUT = 2
EXIT_STOPPED = 3

_PLAN_FILE_RE = re.compile(r"^plan-iteration-(\d+)\.json$")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="plan-forge: plan, review, refine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run or resume a planning session")
    run_parser.add_argument("--task", dest="task")
    run_parser.add_argument("--path", dest="path", type=Path)
    run_parser.add_argument("--feedback", dest="feedback")
    run_parser.add_argument("--working-dir", dest="working_dir")
    run_parser.add_argument("--config", dest="config", type=Path)
    run_parser.add_argument("--slug", dest="slug")
    run_parser.add_argument("--planner-provider", dest="planner_provider")
    run_parser.add_argument("--planner-model", dest="planner_model")
    run_parser.add_argument("--reviewer-provider", dest="reviewer_provider")
    run_parser.add_argument("--reviewer-model", dest="reviewer_model")
    run_parser.add_argument("--max-iterations", type=int, dest="max_iterations")
    run_parser.add_argument("--max-total-tokens", type=int, dest="max_total_tokens")
    run_parser.add_argument("--threshold", type=float, dest="threshold")
    run_parser.add_argument("--output", dest="output", help="Directory for final artifacts")
    run_parser.add_argument("--runs-dir", dest="runs_dir")
    run_parser.add_argument("--mock", action="store_true", dest="mock")
    run_parser.add_argument(
        "--reset-turns",
        action="store_true",
        dest="reset_turns",
        help="Start a fresh iteration budget when resuming",
    )
    run_parser.add_argument("--verbose", action="store_true", dest="verbose")

    status_parser = subparsers.add_parser("status", help="Show a session's derived status")
    status_parser.add_argument("--path", dest="path", type=Path, required=True)
    status_parser.add_argument("--config", dest="config", type=Path)

    sessions_parser = subparsers.add_parser("sessions", help="List sessions, newest first")
    sessions_parser.add_argument("--runs-dir", dest="runs_dir")
    sessions_parser.add_argument("--config", dest="config", type=Path)

    approve_parser = subparsers.add_parser("approve", help="Approve the latest plan as final")
    approve_parser.add_argument("--path", dest="path", type=Path, required=True)
    approve_parser.add_argument("--output", dest="output", help="Directory for final artifacts")
    approve_parser.add_argument("--config", dest="config", type=Path)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def apply_overrides(config: ForgeConfig, args: argparse.Namespace) -> ForgeConfig:
    data: dict[str, Any] = config.model_dump()
    if getattr(args, "planner_provider", None):
        data["planning"]["provider_override"] = args.planner_provider
    if getattr(args, "planner_model", None):
        data["planning"]["model_override"] = args.planner_model
    if getattr(args, "reviewer_provider", None):
        data["review"]["provider_override"] = args.reviewer_provider
    if getattr(args, "reviewer_model", None):
        data["review"]["model_override"] = args.reviewer_model
    if getattr(args, "max_iterations", None):
        data["guardrails"]["max_iterations"] = args.max_iterations
    if getattr(args, "max_total_tokens", None) is not None:
        data["guardrails"]["max_total_tokens"] = args.max_total_tokens
    if getattr(args, "output", None):
        data["output"]["active_dir"] = args.output
    if getattr(args, "runs_dir", None):
        data["output"]["runs_dir"] = args.runs_dir
    if getattr(args, "slug", None):
        data["output"]["slug"] = slugify(args.slug)
    updated = ForgeConfig(**data)
    if getattr(args, "threshold", None) is not None:
        updated = updated.with_threshold(clamp_threshold(args.threshold))
    return updated


def _latest_plan(session_dir: Path) -> tuple[Path, int]:
    best: tuple[Path, int] | None = None
    if session_dir.is_dir():
        for entry in session_dir.iterdir():
            match = _PLAN_FILE_RE.match(entry.name)
            if match and (best is None or int(match.group(1)) > best[1]):
                best = (entry, int(match.group(1)))
    if best is None:
        raise ConfigError(f"No plan-iteration-N.json found in {session_dir}")
    return best


def resolve_input(
    args: argparse.Namespace, config: ForgeConfig
) -> tuple[str, str, ResumeState | None, str | None]:
    """Work out (task, slug, resume state, human response) from --path and --task."""
    path: Path | None = args.path
    if path is not None and path.is_file():
        content = path.read_text(encoding="utf-8").strip()
        task = f"{content}\n\nAdditional context: {args.task}" if args.task else content
        first_line = task.splitlines()[0] if task else task
        return task, config.output.slug or slugify(first_line), None, args.feedback
    if path is not None and path.is_dir():
        slug = path.resolve().name
        session_dir = session_dir_for(config, slug)
        response = args.feedback or args.task
        state = OrchestrationState.load(session_dir)
        if state is not None:
            return state.task, slug, None, response
        plan_path, iteration = _latest_plan(session_dir)
        try:
            plan = validate_plan_payload(json.loads(plan_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValueError) as exc:
            raise ConfigError(f"Cannot resume from {plan_path}: {exc}") from exc
        feedback = [f"[USER FEEDBACK] {response}"] if response else []
        resume = ResumeState(plan=plan, feedback=feedback, start_iteration=iteration + 1)
        return args.task or plan.title, slug, resume, None
    if path is not None:
        raise ConfigError(f"Path does not exist: {path}")
    if not args.task:
        raise ConfigError("Either --task or --path is required")
    return args.task, config.output.slug or slugify(args.task), None, args.feedback


def print_result(result: LoopResult) -> int:
    print("========================================")
    print("Plan-Review Complete")
    print("========================================")
    print(f"Total iterations: {result.total_iterations}")
    print(f"Final status: {result.status.kind}")
    if result.final_review is not None:
        print(f"Final score: {result.final_review.score:.2f}")
        print(f"Review summary: {result.final_review.summary}")
    print(f"Best score: {result.best_score:.2f}")
    print(f"Total tokens: {result.total_tokens}")
    if result.final_plan is not None:
        print(f"Plan title: {result.final_plan.title}")
    if result.status.reason:
        print(f"Reason: {result.status.reason}")
    if result.success:
        return EXIT_APPROVED
    return EXIT_STOPPED


def _load_config(args: argparse.Namespace, env: EnvSettings) -> ForgeConfig:
    return apply_overrides(resolve_config(getattr(args, "config", None), env), args)


def _handle_run(args: argparse.Namespace, env: EnvSettings) -> int:
    set_verbosity(args.verbose)
    config = _load_config(args, env)
    task, slug, resume, response = resolve_input(args, config)
    controller = build_controller(config, env, slug, use_mock=args.mock)
    result = asyncio.run(
        controller.run(
            task,
            working_dir=args.working_dir,
            human_response=response,
            resume=resume,
            reset_turns=args.reset_turns,
        )
    )
    code = print_result(result)
    result.raise_for_stop()
    return code


def _handle_status(args: argparse.Namespace, env: EnvSettings) -> int:
    config = _load_config(args, env)
    info = derive_status(
        args.path,
        threshold=config.guardrails.score_threshold,
        max_iterations=config.guardrails.max_iterations,
        max_total_tokens=config.guardrails.max_total_tokens,
    )
    print(info.model_dump_json(indent=2))
    return EXIT_APPROVED


def _handle_sessions(args: argparse.Namespace, env: EnvSettings) -> int:
    config = _load_config(args, env)
    runs_dir = Path(config.output.runs_dir)
    for slug in list_sessions(runs_dir):
        info = derive_status(
            runs_dir / slug,
            threshold=config.guardrails.score_threshold,
            max_iterations=config.guardrails.max_iterations,
            max_total_tokens=config.guardrails.max_total_tokens,
        )
        score = "-" if info.latest_score is None else f"{info.latest_score:.2f}"
        print(f"{slug}\t{info.status.kind}\titeration={info.iteration}\tscore={score}")
    return EXIT_APPROVED


def _approvable_plan(session_dir: Path, state: OrchestrationState | None) -> Plan:
    if state is not None and state.plan() is not None:
        return state.plan()
    plan_path, _ = _latest_plan(session_dir)
    try:
        return validate_plan_payload(json.loads(plan_path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Cannot approve {plan_path}: {exc}") from exc


def _handle_approve(args: argparse.Namespace, env: EnvSettings) -> int:
    """Write the latest plan as approved and close the session."""
    config = _load_config(args, env)
    session_dir: Path = args.path
    if not session_dir.is_dir():
        raise ConfigError(f"Session directory does not exist: {session_dir}")
    slug = session_dir.resolve().name
    writer = FileOutputWriter(session_dir, Path(config.output.active_dir), slug)
    with DEFAULT_REGISTRY.hold(session_dir):
        state = OrchestrationState.load(session_dir)
        plan = _approvable_plan(session_dir, state)
        writer.write_final(plan, "approved")
        if state is not None:
            state.pending_human_input = None
            state.pending_feedback = []
            state.status = OrchestrationStatus(kind="completed", reason="approved by user")
            state.save(session_dir)
    print(f"Plan '{plan.title}' approved and written to {writer.task_dir}/")
    return EXIT_APPROVED


def run_command(args: argparse.Namespace, env: EnvSettings | None = None) -> int:
    env = env or EnvSettings()
    try:
        if args.command == "run":
            return _handle_run(args, env)
        if args.command == "status":
            return _handle_status(args, env)
        if args.command == "approve":
            return _handle_approve(args, env)
        return _handle_sessions(args, env)
    except HumanInputRequired as exc:
        print(exc.render(), file=sys.stderr)
        return EXIT_HUMAN_INPUT
    except GuardrailStop as exc:
        print(f"Stopped: {exc}", file=sys.stderr)
        return EXIT_STOPPED
    except PlanForgeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    raise SystemExit(run_command(args))


if __name__ == "__main__":
    main()
