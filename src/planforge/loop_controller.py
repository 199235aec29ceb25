"""The plan -> review -> refine loop with persisted state and guardrails."""

from __future__ import annotations

from pathlib import Path

from planforge.checklist import run_hard_checks
from planforge.config import ForgeConfig
from planforge.errors import HumanInputRequired, PersistenceError, PhaseError
from planforge.guardrails import Guardrails
from planforge.metrics import MetricsCollector
from planforge.models.base import TokenUsage
from planforge.output import FinalStatus, OutputWriter
from planforge.phases.base import Planner, PlanningContext, ReviewContext, Reviewer
from planforge.plan import Plan, utc_now
from planforge.registry import DEFAULT_REGISTRY, SessionRegistry
from planforge.review import ReviewResult
from planforge.state import (
    IterationOutcome,
    IterationRecord,
    LoopResult,
    OrchestrationState,
    OrchestrationStatus,
    ResumeState,
)
from planforge.util.logging import get_logger
from planforge.viability.checker import ViabilityChecker
from planforge.viability.dag import analyze_dag
from planforge.viability.types import ViabilityResult

DEFAULT_HUMAN_REASON = "Human verification required"


def viability_feedback(result: ViabilityResult) -> list[str]:
    feedback: list[str] = []
    for violation in result.violations:
        prefix = "[MUST FIX]" if violation.is_critical else "[SHOULD FIX]"
        feedback.append(f"{prefix} {violation.rule_id}: {violation.message}")
        feedback.append(f"  Suggested: {violation.remediation}")
    return feedback


class LoopController:
    """Drives one session directory until approval, a pause or a guardrail stop.

    Every iteration writes its plan and review artifacts before the state file
    that references them, and the state file is replaced atomically, so a
    crash leaves either iteration N or N-1 fully described. The session lock
    is held for the whole run.
    """

    def __init__(
        self,
        planner: Planner,
        reviewer: Reviewer,
        output: OutputWriter,
        config: ForgeConfig,
        session_dir: Path,
        slug: str,
        guardrails: Guardrails | None = None,
        checker: ViabilityChecker | None = None,
        registry: SessionRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.planner = planner
        self.reviewer = reviewer
        self.output = output
        self.config = config
        self.session_dir = Path(session_dir)
        self.slug = slug
        self.guardrails = guardrails or Guardrails(config.guardrails.to_limits())
        self.checker = checker or ViabilityChecker()
        self.registry = registry or DEFAULT_REGISTRY
        self.metrics = metrics or MetricsCollector(session_dir=self.session_dir)
        self.logger = get_logger("planforge.loop")
        self._state: OrchestrationState | None = None

    # -- entry point -------------------------------------------------------

    async def run(
        self,
        task: str,
        working_dir: str | None = None,
        human_response: str | None = None,
        approved: bool = True,
        resume: ResumeState | None = None,
        reset_turns: bool = False,
    ) -> LoopResult:
        """Run until approval, a pause or a hard stop.

        Resuming keeps counting iterations against ``max_iterations`` unless
        ``reset_turns`` starts a fresh iteration budget from the current one.
        """
        with self.registry.hold(self.session_dir):
            state = self._prepare_state(task, working_dir)
            finished = state.status.kind in {"completed", "completed_best_effort"}
            if not state.can_resume() or (
                finished and human_response is None and resume is None and not reset_turns
            ):
                self.logger.info("loop.skip status=%s", state.status.kind)
                return self._result(state, state.plan() or state.best())
            resume = self._resume_from(state, human_response, approved, resume)
            if reset_turns:
                state.turn_base = state.iteration
                self.logger.info("loop.reset_turns base=%s", state.turn_base)
            self._bind_usage(state)
            state.status = OrchestrationStatus(kind="running")
            state.start_time_iso = utc_now()
            state.save(self.session_dir)
            try:
                return await self._loop(state, resume)
            finally:
                self._bind_usage(None)
                self.metrics.write_run_summary(
                    {
                        "session_id": state.session_id,
                        "iterations": state.iteration,
                        "status": state.status.kind,
                        "best_score": state.best_score,
                        "total_tokens": state.total_tokens,
                    }
                )

    # -- setup -------------------------------------------------------------

    def _prepare_state(self, task: str, working_dir: str | None) -> OrchestrationState:
        state = OrchestrationState.load(self.session_dir)
        if state is None:
            state = OrchestrationState.new(
                session_id=self.slug, task=task, task_slug=self.slug, working_dir=working_dir
            )
            self.logger.info("loop.session new=%s", self.slug)
        else:
            self.logger.info(
                "loop.session resumed=%s iteration=%s status=%s",
                self.slug,
                state.iteration,
                state.status.kind,
            )
            if working_dir:
                state.working_dir = working_dir
        return state

    def _resume_from(
        self,
        state: OrchestrationState,
        human_response: str | None,
        approved: bool,
        resume: ResumeState | None,
    ) -> ResumeState | None:
        if resume is not None:
            state.iteration = max(0, resume.start_iteration - 1)
            state.set_current_plan(resume.plan)
            state.pending_feedback = list(resume.feedback)
            return resume
        if state.pending_human_input is not None and human_response is None:
            pending = state.pending_human_input
            raise HumanInputRequired(
                self.slug,
                pending.reason or pending.question,
                pending.question,
                runs_dir=self.config.output.runs_dir,
                active_dir=self.config.output.active_dir,
            )
        feedback = list(state.pending_feedback)
        if human_response is not None:
            if state.pending_human_input is not None:
                record = state.apply_human_response(human_response, approved)
                self.logger.info("loop.human_response category=%s", record.category if record else None)
            feedback.append(f"[USER FEEDBACK] {human_response}")
        state.pending_feedback = feedback
        return state.resume_state(feedback)

    def _bind_usage(self, state: OrchestrationState | None) -> None:
        self._state = state
        if state is None:
            self.planner.set_usage_callback(None)
            self.reviewer.set_usage_callback(None)
            return
        self.planner.set_usage_callback(self._planner_usage)
        self.reviewer.set_usage_callback(self._reviewer_usage)

    def _planner_usage(self, usage: TokenUsage) -> None:
        if self._state is not None:
            self._state.add_tokens(planner=(usage.input_tokens, usage.output_tokens))
            self._state.add_tool_calls(usage.tool_calls)
            self._state.token_breakdown.estimated |= usage.estimated

    def _reviewer_usage(self, usage: TokenUsage) -> None:
        if self._state is not None:
            self._state.add_tokens(reviewer=(usage.input_tokens, usage.output_tokens))
            self._state.add_tool_calls(usage.tool_calls)
            self._state.token_breakdown.estimated |= usage.estimated

    # -- loop --------------------------------------------------------------

    async def _loop(self, state: OrchestrationState, resume: ResumeState | None) -> LoopResult:
        threshold = self.config.guardrails.score_threshold
        last_review: ReviewResult | None = None
        while True:
            if self._stop_if_guardrail(state):
                break
            state.iteration += 1
            iteration = state.iteration
            tokens_before = state.total_tokens
            self.metrics.inc("iterations")
            self.logger.info("loop.iteration n=%s", iteration)

            try:
                plan = await self._plan(state, resume)
                self.output.write_intermediate(plan, iteration)
                checklist = run_hard_checks(plan)
                viability = self.checker.check_plan(plan)
                dag = analyze_dag(plan.instructions or [])
                review = await self._review(
                    plan,
                    ReviewContext(
                        iteration=iteration,
                        working_dir=state.working_dir,
                        checklist=checklist,
                        viability=viability,
                        dag_metrics=dag,
                        threshold=threshold,
                    ),
                )
            except PhaseError as exc:
                self._record_phase_error(state, exc, tokens_before)
                state.save(self.session_dir)
                continue
            except PersistenceError:
                self._mark_failed(state, "persistence failure")
                raise
            except Exception as exc:
                self._mark_failed(state, str(exc))
                raise

            review.hard_check_results = checklist
            review.calculate_passed(threshold)
            if not review.summary:
                review.summary = self._summarize(review, viability)
            self.output.write_review(review, iteration)
            last_review = review
            state.consecutive_phase_errors = 0
            state.last_error = None
            state.record_review(review)
            conditions = self.guardrails.check_all_conditions(
                plan.to_json(), review.score, iteration
            )
            state.add_conditions([condition.name for condition in conditions])

            if review.llm_review.requires_human_input:
                reason = review.llm_review.human_input_reason or DEFAULT_HUMAN_REASON
                state.pending_feedback = review.extract_feedback()
                self._append_history(state, viability, review, "human_input_requested", tokens_before)
                self._pause(state, plan, reason, reason, "clarification")

            if review.passed:
                unapproved = []
                if self.config.guardrails.require_condition_approval:
                    unapproved = self.guardrails.check_before_finalize(plan.to_json(), state)
                if unapproved:
                    first = unapproved[0]
                    details = ", ".join(first.details) or first.name
                    self._append_history(state, viability, review, "human_input_requested", tokens_before)
                    self._pause(
                        state,
                        plan,
                        f"Approval required for {first.name}: {details}",
                        f"Plan triggers {first.name}",
                        first.name,
                    )
                self._append_history(state, viability, review, "review_passed", tokens_before)
                state.pending_feedback = []
                state.status = OrchestrationStatus(kind="completed")
                self.logger.info("loop.approved n=%s score=%.2f", iteration, review.score)
                break

            outcome: IterationOutcome = "review_failed" if viability.passed else "viability_failed"
            self._append_history(state, viability, review, outcome, tokens_before)
            state.pending_feedback = review.extract_feedback() + viability_feedback(viability)
            self.logger.info(
                "loop.feedback n=%s items=%s score=%.2f",
                iteration,
                len(state.pending_feedback),
                review.score,
            )
            state.generate_context_summary()
            state.save(self.session_dir)

        return self._finish(state, last_review)

    async def _plan(self, state: OrchestrationState, resume: ResumeState | None) -> Plan:
        prior = state.plan()
        if (
            resume is not None
            and state.iteration == resume.start_iteration
            and not resume.feedback
        ):
            self.logger.info("loop.plan reuse=%s", state.iteration)
            return resume.plan
        ctx = PlanningContext(
            task=state.task,
            iteration=state.iteration,
            working_dir=state.working_dir,
            pending_feedback=list(state.pending_feedback),
            current_plan=prior,
            context_summary=state.context_summary,
        )
        self.metrics.inc("planner_calls")
        with self.metrics.measure("planner"):
            plan = await self.planner.generate_plan(ctx)
        plan.metadata.iteration = state.iteration
        if prior is not None and plan.metadata.version <= prior.metadata.version:
            plan.metadata.version = prior.metadata.version
            plan.touch()
        state.set_current_plan(plan)
        return plan

    async def _review(self, plan: Plan, ctx: ReviewContext) -> ReviewResult:
        self.metrics.inc("reviewer_calls")
        with self.metrics.measure("reviewer"):
            return await self.reviewer.review_plan(plan, ctx)

    # -- transitions -------------------------------------------------------

    def _record_phase_error(
        self, state: OrchestrationState, exc: PhaseError, tokens_before: int
    ) -> None:
        message = str(exc)
        self.metrics.inc("phase_errors")
        self.logger.warning("loop.phase_error n=%s error=%s", state.iteration, message)
        state.consecutive_phase_errors += 1
        state.last_error = message
        state.add_conditions([f"phase_error:{message}"])
        state.iteration_history.append(
            IterationRecord(
                iteration=state.iteration,
                tool_calls=state.tool_calls,
                tokens=state.total_tokens - tokens_before,
                outcome="phase_error",
            )
        )

    def _append_history(
        self,
        state: OrchestrationState,
        viability: ViabilityResult,
        review: ReviewResult,
        outcome: IterationOutcome,
        tokens_before: int,
    ) -> None:
        state.iteration_history.append(
            IterationRecord(
                iteration=state.iteration,
                viability_critical=viability.critical_count,
                viability_warning=viability.warning_count,
                review_score=review.score,
                review_passed=review.passed,
                tool_calls=state.tool_calls,
                tokens=state.total_tokens - tokens_before,
                outcome=outcome,
            )
        )

    def _stop_if_guardrail(self, state: OrchestrationState) -> bool:
        hard_stop = self.guardrails.check(state)
        if hard_stop is None:
            return False
        if state.best_score > 0:
            state.status = OrchestrationStatus(
                kind="completed_best_effort",
                reason=hard_stop.describe(),
                hard_stop=hard_stop,
            )
        else:
            state.status = OrchestrationStatus(
                kind="hard_stopped", reason=hard_stop.describe(), hard_stop=hard_stop
            )
        self.logger.warning("loop.guardrail status=%s %s", state.status.kind, hard_stop.describe())
        return True

    def _pause(
        self,
        state: OrchestrationState,
        plan: Plan,
        question: str,
        reason: str,
        category: str,
    ) -> None:
        state.request_human_input(question, category, reason)
        state.generate_context_summary()
        state.save(self.session_dir)
        self.output.write_final(plan, "draft")
        self.logger.warning("loop.paused n=%s reason=%s", state.iteration, reason)
        raise HumanInputRequired(
            self.slug,
            reason,
            question,
            runs_dir=self.config.output.runs_dir,
            active_dir=self.config.output.active_dir,
        )

    def _mark_failed(self, state: OrchestrationState, error: str) -> None:
        state.status = OrchestrationStatus(kind="failed", error=error)
        try:
            state.save(self.session_dir)
        except PersistenceError as exc:
            self.logger.error("loop.failed_state_unsaved error=%s", exc)

    def _finish(self, state: OrchestrationState, last_review: ReviewResult | None) -> LoopResult:
        kind = state.status.kind
        status: FinalStatus = "approved"
        final_plan = state.plan()
        if kind == "completed_best_effort":
            status = "best_effort"
            final_plan = state.best() or final_plan
        elif kind != "completed":
            status = "draft"
        if final_plan is not None:
            self.output.write_final(final_plan, status, state.best_score)
        state.generate_context_summary()
        state.save(self.session_dir)
        self.logger.info(
            "loop.done status=%s iterations=%s best=%.2f tokens=%s",
            kind,
            state.iteration,
            state.best_score,
            state.total_tokens,
        )
        return self._result(state, final_plan, last_review)

    def _result(
        self,
        state: OrchestrationState,
        final_plan: Plan | None,
        final_review: ReviewResult | None = None,
    ) -> LoopResult:
        if final_review is None and state.reviews:
            final_review = ReviewResult.model_validate(state.reviews[-1])
        return LoopResult(
            final_plan=final_plan,
            total_iterations=state.iteration,
            final_review=final_review,
            success=state.status.kind == "completed",
            best_score=state.best_score,
            total_tokens=state.total_tokens,
            status=state.status,
        )

    @staticmethod
    def _summarize(review: ReviewResult, viability: ViabilityResult) -> str:
        failed = sum(1 for check in review.hard_check_results if not check.passed)
        verdict = "passed" if review.passed else "needs revision"
        return (
            f"Score {review.score:.2f} ({verdict}); {failed} hard check(s) failed;"
            f" viability {viability.score:.2f} with {viability.critical_count} critical"
        )
