from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from orchestra.budget import BudgetGate, BudgetTracker
from orchestra.config import MAX_ITERATIONS_CAP, MAX_MINUTES_CAP, OrchestraConfig
from orchestra.contracts import (
    AdvisorAgent,
    ArchitectureAgent,
    CommandRunnerLike,
    DesignAgent,
    FailureClassifier,
    GoalValidator,
    ImplementationAgent,
    PackagerAgent,
    PlanningAgent,
    ReviewAgent,
    ValidationAgent,
)
from orchestra.errors import PhaseExecutionFailure
from orchestra.models import (
    PRE_LOOP_PHASES,
    ArchitectureArtifact,
    DesignArtifact,
    GoalValidationArtifact,
    Phase,
    PhaseStatus,
    PlanArtifact,
    ReviewArtifact,
    SessionInput,
    SessionState,
    SessionStatus,
    SupervisorAdvice,
    to_dict,
)
from orchestra.phases import (
    ArchitecturePhase,
    DesignPhase,
    GoalValidationPhase,
    ImplementationPhase,
    PackagingPhase,
    PhaseContext,
    PhaseExecutor,
    PhaseResult,
    PhaseServices,
    PlanningPhase,
    ReviewPhase,
    RunLedger,
    ValidationPhase,
    dedupe,
)
from orchestra.specialists.goal_validator import WorkspaceGoalValidator
from orchestra.state import ArtifactStore, SessionStore
from orchestra.validation import ValidationPipeline
from orchestra.workspace import Workspace

logger = logging.getLogger(__name__)

FEEDBACK_HISTORY = 3
ADVISOR_PATCH_LINES = 20
PIPELINE_TIMEOUT_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class AgentRoster:
    planner: PlanningAgent
    architect: ArchitectureAgent
    designer: DesignAgent
    coder: ImplementationAgent
    tester: ValidationAgent
    reviewer: ReviewAgent | None = None
    classifier: FailureClassifier | None = None
    goal_validator: GoalValidator | None = None
    advisor: AdvisorAgent | None = None
    packager: PackagerAgent | None = None


def _bounded_int(value: Any, fallback: int, cap: int) -> int:
    if value is None or isinstance(value, bool):
        number = fallback
    else:
        try:
            number = int(value)
        except (TypeError, ValueError):
            number = fallback
    if number < 1:
        number = fallback
    return max(1, min(number, cap))


def normalize_input(session_input: SessionInput, config: OrchestraConfig) -> SessionInput:
    """Fill defaults and clamp limits; raises ``ValueError`` when no topic is given."""
    topic = (session_input.topic or session_input.task or "").strip()
    if not topic:
        raise ValueError("Session topic is required.")
    workflow = config.workflow
    iterations = session_input.max_iterations
    if iterations is None:
        iterations = session_input.max_attempts
    autonomous = session_input.autonomous
    return replace(
        session_input,
        topic=topic,
        task=(session_input.task or "").strip() or None,
        file_paths=dedupe(session_input.file_paths),
        validation_commands=[
            command.strip() for command in session_input.validation_commands if command.strip()
        ],
        test_command=(session_input.test_command or "").strip() or None,
        max_iterations=_bounded_int(iterations, workflow.max_iterations, MAX_ITERATIONS_CAP),
        max_minutes=_bounded_int(
            session_input.max_minutes, workflow.max_minutes, MAX_MINUTES_CAP
        ),
        autonomous=workflow.autonomous if autonomous is None else bool(autonomous),
    )


def _join(*parts: str) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())


class Supervisor:
    """Drives sessions through plan, build, validate, review and package phases."""

    def __init__(
        self,
        *,
        config: OrchestraConfig,
        agents: AgentRoster,
        workspace: Workspace,
        runner: CommandRunnerLike,
        store: SessionStore | None = None,
        artifacts: ArtifactStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.agents = agents
        self.workspace = workspace
        self.store = store or SessionStore()
        self.artifacts = artifacts or ArtifactStore()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tasks: dict[str, asyncio.Task[None]] = {}

        services = PhaseServices(store=self.store, artifacts=self.artifacts, config=config)
        pipeline = ValidationPipeline(
            runner,
            agents.tester,
            classifier=agents.classifier,
            timeout_seconds=config.workflow.command_timeout_seconds
            + PIPELINE_TIMEOUT_GRACE_SECONDS,
        )
        self.phases: dict[Phase, PhaseExecutor] = {
            Phase.PLANNING: PlanningPhase(services, agents.planner),
            Phase.ARCHITECTURE: ArchitecturePhase(services, agents.architect),
            Phase.DESIGN: DesignPhase(services, agents.designer),
            Phase.IMPLEMENTATION: ImplementationPhase(services, agents.coder, workspace),
            Phase.VALIDATION: ValidationPhase(services, pipeline),
            Phase.PACKAGING: PackagingPhase(services, workspace, agents.packager),
        }
        if config.workflow.goal_validation:
            validator = agents.goal_validator or WorkspaceGoalValidator(workspace)
            self.phases[Phase.GOAL_VALIDATION] = GoalValidationPhase(services, validator)
        if config.workflow.review_mode != "off" and agents.reviewer is not None:
            self.phases[Phase.REVIEW] = ReviewPhase(services, agents.reviewer)

    @property
    def phase_order(self) -> list[Phase]:
        return [phase for phase in Phase if phase in self.phases]

    @property
    def review_in_loop(self) -> bool:
        return Phase.REVIEW in self.phases and self.config.workflow.review_mode == "loop"

    @property
    def review_after_loop(self) -> bool:
        """Review once after acceptance; blocking issues are packaged, not retried."""
        return Phase.REVIEW in self.phases and self.config.workflow.review_mode == "final"

    def start(self, session_input: SessionInput) -> str:
        """Create a session and schedule its run on the running event loop."""
        loop = asyncio.get_running_loop()
        normalized = normalize_input(session_input, self.config)
        tracker = BudgetTracker(
            normalized.max_iterations or 1, normalized.max_minutes or 1, started_at=self._clock()
        )
        session = self.store.create(
            normalized, self.phase_order, tracker.snapshot(1, self._clock())
        )
        task = loop.create_task(
            self._run_guarded(session.id, tracker), name=f"orchestra-session-{session.id}"
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session.id, None))
        logger.info("session %s started: %s", session.id, normalized.topic)
        return session.id

    async def wait(self, session_id: str) -> SessionState:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})
        return self.store.get(session_id)

    async def run(self, session_input: SessionInput) -> SessionState:
        return await self.wait(self.start(session_input))

    def get(self, session_id: str) -> SessionState:
        return self.store.get(session_id)

    def _emit(
        self,
        session_id: str,
        event_type: str,
        message: str,
        *,
        phase: Phase | None = None,
        iteration: int | None = None,
        artifact_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.store.push_event(
            session_id,
            "supervisor",
            event_type,
            message,
            phase=phase,
            iteration=iteration,
            artifact_id=artifact_id,
            data=data,
        )

    async def _run_guarded(self, session_id: str, tracker: BudgetTracker) -> None:
        try:
            await self._run(session_id, tracker)
        except asyncio.CancelledError:
            self._fail_unhandled(session_id, "Session run was cancelled.")
            raise
        except Exception as exc:
            logger.exception("session %s crashed", session_id)
            self._fail_unhandled(session_id, str(exc) or type(exc).__name__)

    async def _run(self, session_id: str, tracker: BudgetTracker) -> None:
        self.store.update_status(session_id, SessionStatus.RUNNING)
        session = self.store.get(session_id)
        self._emit(
            session_id,
            "session_started",
            f"Session started: {session.input.topic}",
            data={
                "topic": session.input.topic,
                "file_paths": session.input.file_paths,
                "max_iterations": tracker.max_iterations,
                "max_minutes": tracker.max_minutes,
                "autonomous": session.input.autonomous,
                "review_mode": self.config.workflow.review_mode,
                "phases": [str(phase) for phase in self.phase_order],
            },
        )
        ledger = RunLedger()
        try:
            for phase in PRE_LOOP_PHASES:
                result = await self._execute_phase(session_id, phase, ledger)
                self._require_success(phase, result, None)

            accepted = await self._run_loop(session_id, tracker, ledger)
            if accepted is None:
                return
            iteration, summary, feedback = accepted

            if self.review_after_loop:
                result = await self._execute_phase(
                    session_id, Phase.REVIEW, ledger, iteration=iteration, feedback=feedback
                )
                self._require_success(Phase.REVIEW, result, iteration)
                summary = _join(summary, result.summary)

            result = await self._execute_phase(
                session_id, Phase.PACKAGING, ledger, iteration=iteration
            )
            self._require_success(Phase.PACKAGING, result, iteration)
        except PhaseExecutionFailure as failure:
            self._finish_failed(session_id, failure)
            return

        self.store.set_current_phase(session_id, None)
        self._emit(
            session_id,
            "session_finished",
            f"Session succeeded on iteration {iteration}.",
            iteration=iteration,
            data={"status": str(SessionStatus.SUCCESS)},
        )
        self.store.update_status(session_id, SessionStatus.SUCCESS, summary)
        logger.info("session %s succeeded on iteration %s", session_id, iteration)

    @staticmethod
    def _require_success(phase: Phase, result: PhaseResult, iteration: int | None) -> None:
        if result.status == PhaseStatus.FAILED:
            raise PhaseExecutionFailure(
                result.summary or f"{phase} phase failed.",
                phase=phase,
                iteration=iteration,
                artifact_id=result.artifact_id,
                error_type="phase_result_failed",
            )

    async def _run_loop(
        self, session_id: str, tracker: BudgetTracker, ledger: RunLedger
    ) -> tuple[int, str, str] | None:
        history: list[str] = []
        iteration = 0
        while True:
            iteration += 1
            gate = tracker.can_start_iteration(iteration, self._clock())
            self.store.update_budget(session_id, gate.snapshot)
            if not gate.ok:
                self._finish_exhausted(session_id, gate, iteration)
                return None

            self.store.set_iteration(session_id, iteration)
            self._emit(
                session_id,
                "iteration_started",
                f"Iteration {iteration} started.",
                iteration=iteration,
                data={"budget": to_dict(gate.snapshot)},
            )
            previous = _join(*history[-FEEDBACK_HISTORY:])
            advice = await self._advise(session_id, iteration, previous, gate, ledger)
            feedback = self.compose_feedback(
                session_id, previous, advice.feedback_patch if advice else []
            )

            await self._execute_phase(
                session_id, Phase.IMPLEMENTATION, ledger, iteration=iteration, feedback=feedback
            )

            goal_summary = ""
            if Phase.GOAL_VALIDATION in self.phases:
                goal = await self._execute_phase(
                    session_id, Phase.GOAL_VALIDATION, ledger, iteration=iteration
                )
                if not goal.passed:
                    history.append(goal.feedback)
                    continue
                goal_summary = goal.summary

            validation = await self._execute_phase(
                session_id, Phase.VALIDATION, ledger, iteration=iteration, feedback=feedback
            )
            if not validation.passed:
                history.append(validation.feedback)
                continue

            summary = _join(goal_summary, validation.summary)
            if self.review_in_loop:
                review = await self._execute_phase(
                    session_id,
                    Phase.REVIEW,
                    ledger,
                    iteration=iteration,
                    feedback=_join(previous, summary),
                )
                if not review.passed:
                    history.append(review.feedback)
                    continue
                summary = _join(summary, review.summary)

            return iteration, summary, previous

    async def _advise(
        self,
        session_id: str,
        iteration: int,
        feedback: str,
        gate: BudgetGate,
        ledger: RunLedger,
    ) -> SupervisorAdvice | None:
        session = self.store.get(session_id)
        advisor = self.agents.advisor
        if advisor is None or not session.input.autonomous:
            return None
        try:
            advice = await advisor.advise(
                iteration=iteration,
                topic=session.input.topic,
                feedback=feedback,
                budget=gate.snapshot,
            )
        except Exception as exc:
            logger.warning("advisor failed on iteration %s: %s", iteration, exc)
            self.store.push_event(
                session_id,
                "advisor",
                "advisor_error",
                f"Advisor failed: {exc}",
                iteration=iteration,
            )
            return None

        if advice.focus_summary:
            ledger.advisor_notes.append(advice.focus_summary)
        ledger.risk_notes = dedupe(ledger.risk_notes + advice.risk_notes)
        self.store.push_event(
            session_id,
            "advisor",
            "advisor_applied",
            advice.focus_summary or "Advisor guidance applied.",
            iteration=iteration,
            data={
                "recommended_action": advice.recommended_action,
                "confidence": advice.confidence,
                "feedback_patch": advice.feedback_patch,
                "risk_notes": advice.risk_notes,
            },
        )
        return advice

    def artifact_context(self, session_id: str) -> dict[str, Any]:
        refs = self.artifacts.get_refs(session_id)
        context: dict[str, Any] = {"refs": {str(phase): ref for phase, ref in refs.items()}}

        plan = self.artifacts.get(session_id, Phase.PLANNING)
        if isinstance(plan, PlanArtifact):
            context["plan"] = {
                "topic": plan.topic,
                "goals": plan.goals[:3],
                "done_criteria": plan.done_criteria[:3],
            }
        architecture = self.artifacts.get(session_id, Phase.ARCHITECTURE)
        if isinstance(architecture, ArchitectureArtifact):
            context["architecture"] = [
                {"name": module.name, "files": module.files[:3]}
                for module in architecture.modules[:3]
            ]
        design = self.artifacts.get(session_id, Phase.DESIGN)
        if isinstance(design, DesignArtifact):
            context["design"] = {
                "components": [component.name for component in design.components[:5]],
                "apis": [api.name for api in design.apis[:5]],
                "checklist": design.implementation_checklist[:5],
            }
        goal = self.artifacts.get(session_id, Phase.GOAL_VALIDATION)
        if isinstance(goal, GoalValidationArtifact):
            context["goal_validation"] = {
                "passed": goal.passed,
                "failed_checks": [check.label for check in goal.checks if not check.passed],
                "missing_targets": goal.missing_targets,
            }
        review = self.artifacts.get(session_id, Phase.REVIEW)
        if isinstance(review, ReviewArtifact):
            context["review"] = {
                "score": review.score,
                "blocking": len(review.blocking_issues),
            }
        return context

    def compose_feedback(
        self, session_id: str, previous: str, advisor_patch: list[str] | None = None
    ) -> str:
        """Build the implementation feedback for the next iteration."""
        context = json.dumps(self.artifact_context(session_id), ensure_ascii=False)
        composed = _join(f"Artifact context: {context}", previous)
        lines = dedupe(advisor_patch or [])[:ADVISOR_PATCH_LINES]
        if lines:
            composed = _join(composed, "Advisor guidance:\n" + "\n".join(lines))
        return composed

    async def _execute_phase(
        self,
        session_id: str,
        phase: Phase,
        ledger: RunLedger,
        *,
        iteration: int | None = None,
        feedback: str = "",
    ) -> PhaseResult:
        executor = self.phases[phase]
        self.store.set_current_phase(session_id, phase)
        self.store.set_phase_status(session_id, phase, PhaseStatus.RUNNING)
        self._emit(
            session_id, "phase_started", f"{phase} started.", phase=phase, iteration=iteration
        )
        context = PhaseContext(
            session=self.store.get(session_id),
            feedback=feedback,
            iteration=iteration,
            ledger=ledger,
        )
        try:
            result = await executor.execute(context)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("phase %s raised in session %s: %s", phase, session_id, message)
            self.store.set_phase_status(session_id, phase, PhaseStatus.FAILED)
            self._emit(
                session_id,
                "phase_failed",
                f"{phase} failed: {message}",
                phase=phase,
                iteration=iteration,
                data={"error_type": "runtime_error", "error": message},
            )
            raise PhaseExecutionFailure(
                message, phase=phase, iteration=iteration, error_type="runtime_error"
            ) from exc

        status = result.status
        if status not in {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED}:
            status = PhaseStatus.COMPLETED
        self.store.set_phase_status(session_id, phase, status)
        if result.artifact_id:
            self.store.set_artifact_ref(session_id, phase, result.artifact_id)
        self._emit(
            session_id,
            f"phase_{status}",
            f"{phase} {status}.",
            phase=phase,
            iteration=iteration,
            artifact_id=result.artifact_id,
            data={"passed": result.passed, "summary": result.summary},
        )
        return result

    def _skip_pending(self, session_id: str, reason: str) -> None:
        session = self.store.get(session_id)
        for phase, status in session.phase_statuses.items():
            if status == PhaseStatus.PENDING:
                self.store.set_phase_status(session_id, phase, PhaseStatus.SKIPPED)
                self._emit(
                    session_id,
                    "phase_skipped",
                    f"{phase} skipped: {reason}",
                    phase=phase,
                    data={"reason": reason},
                )

    def _finish_exhausted(self, session_id: str, gate: BudgetGate, iteration: int) -> None:
        reason = gate.reason
        self._skip_pending(session_id, f"{reason} budget exhausted")
        self.store.set_current_phase(session_id, None)
        summary = f"Budget exhausted ({reason}) before iteration {iteration}."
        self._emit(
            session_id,
            "budget_exhausted",
            summary,
            data={"reason": reason, "budget": to_dict(gate.snapshot)},
        )
        self._emit(
            session_id,
            "session_finished",
            summary,
            data={"status": str(SessionStatus.FAILED), "reason": reason},
        )
        self.store.update_status(session_id, SessionStatus.FAILED, summary)
        logger.info("session %s failed: %s", session_id, summary)

    def _finish_failed(self, session_id: str, failure: PhaseExecutionFailure) -> None:
        self._skip_pending(session_id, f"{failure.phase} failed")
        summary = f"Phase {failure.phase} failed: {failure}"
        self._emit(
            session_id,
            "session_finished",
            summary,
            phase=failure.phase,
            iteration=failure.iteration,
            artifact_id=failure.artifact_id,
            data={"status": str(SessionStatus.FAILED), "error_type": failure.error_type},
        )
        self.store.update_status(session_id, SessionStatus.FAILED, summary)
        logger.info("session %s failed: %s", session_id, summary)

    def _fail_unhandled(self, session_id: str, message: str) -> None:
        session = self.store.find(session_id)
        if session is None or session.status.is_terminal:
            return
        phase = session.current_phase
        if phase is not None and session.phase_statuses.get(phase) == PhaseStatus.RUNNING:
            self.store.set_phase_status(session_id, phase, PhaseStatus.FAILED)
        self._skip_pending(session_id, "session aborted")
        self.store.push_event(
            session_id,
            "supervisor",
            "error",
            message,
            phase=phase,
            iteration=session.iteration or None,
            data={"error_type": "unhandled_error"},
        )
        self.store.update_status(session_id, SessionStatus.FAILED, f"Unhandled error: {message}")
