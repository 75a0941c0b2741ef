from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol

from orchestra.config import OrchestraConfig
from orchestra.contracts import (
    ArchitectureAgent,
    DesignAgent,
    GoalValidator,
    ImplementationAgent,
    PackagerAgent,
    PlanningAgent,
    ReviewAgent,
    WorkspaceLike,
)
from orchestra.errors import OrchestraError
from orchestra.models import (
    ArchitectureArtifact,
    DesignArtifact,
    FailureClassification,
    PackageArtifact,
    PackageDraft,
    Phase,
    PhaseStatus,
    PlanArtifact,
    ReviewArtifact,
    SessionState,
    ValidationArtifact,
    ValidationCommand,
    ValidationStep,
    to_dict,
)
from orchestra.state import ArtifactStore, SessionStore
from orchestra.validation import ValidationPipeline, resolve_validation_commands
from orchestra.workspace import Workspace

logger = logging.getLogger(__name__)

TIMELINE_EVENTS = 30
STEP_OUTPUT_EVENT_CHARS = 1000


def dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        value = item.strip()
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


@dataclass(slots=True)
class RunLedger:
    """Per-session facts collected while phases run."""

    changed_files: list[str] = field(default_factory=list)
    last_changed: list[str] = field(default_factory=list)
    advisor_notes: list[str] = field(default_factory=list)
    risk_notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PhaseContext:
    session: SessionState
    feedback: str = ""
    iteration: int | None = None
    ledger: RunLedger = field(default_factory=RunLedger)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def task(self) -> str:
        return self.session.input.task or self.session.input.topic


@dataclass(slots=True)
class PhaseResult:
    status: PhaseStatus = PhaseStatus.COMPLETED
    passed: bool = True
    summary: str = ""
    feedback: str = ""
    artifact_id: str | None = None
    classification: FailureClassification | None = None
    data: dict[str, Any] = field(default_factory=dict)


class PhaseExecutor(Protocol):
    phase: ClassVar[Phase]

    async def execute(self, context: PhaseContext) -> PhaseResult: ...


@dataclass(slots=True)
class PhaseServices:
    store: SessionStore
    artifacts: ArtifactStore
    config: OrchestraConfig


@dataclass(slots=True)
class PlanningPhase:
    phase: ClassVar[Phase] = Phase.PLANNING
    services: PhaseServices
    agent: PlanningAgent

    async def execute(self, context: PhaseContext) -> PhaseResult:
        store = self.services.store
        store.push_event(
            context.session_id,
            "planner",
            "agent_started",
            "Planner agent is generating the plan artifact.",
            phase=self.phase,
        )
        artifact = await self.agent.create_plan(
            session_id=context.session_id,
            topic=context.session.input.topic,
            file_paths=context.session.input.file_paths,
        )
        self.services.artifacts.save(context.session_id, artifact)
        store.push_event(
            context.session_id,
            "planner",
            "artifact_created",
            "Plan artifact created.",
            phase=self.phase,
            artifact_id=artifact.id,
            data={
                "goals": len(artifact.goals),
                "requirements": len(artifact.requirements),
                "done_criteria": len(artifact.done_criteria),
            },
        )
        return PhaseResult(
            summary=f"Plan with {len(artifact.goals)} goal(s).", artifact_id=artifact.id
        )


@dataclass(slots=True)
class ArchitecturePhase:
    phase: ClassVar[Phase] = Phase.ARCHITECTURE
    services: PhaseServices
    agent: ArchitectureAgent

    async def execute(self, context: PhaseContext) -> PhaseResult:
        plan = self.services.artifacts.get(context.session_id, Phase.PLANNING)
        if not isinstance(plan, PlanArtifact):
            raise OrchestraError("Missing planning artifact for architecture phase.")
        store = self.services.store
        store.push_event(
            context.session_id,
            "architect",
            "agent_started",
            "Architect agent is generating the architecture artifact.",
            phase=self.phase,
            artifact_id=plan.id,
        )
        artifact = await self.agent.create_architecture(
            session_id=context.session_id, topic=context.session.input.topic, plan=plan
        )
        self.services.artifacts.save(context.session_id, artifact)
        store.push_event(
            context.session_id,
            "architect",
            "artifact_created",
            "Architecture artifact created.",
            phase=self.phase,
            artifact_id=artifact.id,
            data={"modules": len(artifact.modules), "risks": len(artifact.risks)},
        )
        return PhaseResult(
            summary=f"Architecture with {len(artifact.modules)} module(s).",
            artifact_id=artifact.id,
        )


@dataclass(slots=True)
class DesignPhase:
    phase: ClassVar[Phase] = Phase.DESIGN
    services: PhaseServices
    agent: DesignAgent

    async def execute(self, context: PhaseContext) -> PhaseResult:
        artifacts = self.services.artifacts
        plan = artifacts.get(context.session_id, Phase.PLANNING)
        architecture = artifacts.get(context.session_id, Phase.ARCHITECTURE)
        if not isinstance(plan, PlanArtifact) or not isinstance(architecture, ArchitectureArtifact):
            raise OrchestraError("Design phase requires planning and architecture artifacts.")
        store = self.services.store
        store.push_event(
            context.session_id,
            "designer",
            "agent_started",
            "Designer agent is generating the design artifact.",
            phase=self.phase,
            artifact_id=architecture.id,
        )
        artifact = await self.agent.create_design(
            session_id=context.session_id,
            topic=context.session.input.topic,
            plan=plan,
            architecture=architecture,
        )
        artifacts.save(context.session_id, artifact)
        store.push_event(
            context.session_id,
            "designer",
            "artifact_created",
            "Design artifact created.",
            phase=self.phase,
            artifact_id=artifact.id,
            data={
                "components": len(artifact.components),
                "apis": len(artifact.apis),
                "checklist": len(artifact.implementation_checklist),
            },
        )
        return PhaseResult(
            summary=f"Design with {len(artifact.components)} component(s).",
            artifact_id=artifact.id,
        )


@dataclass(slots=True)
class ImplementationPhase:
    phase: ClassVar[Phase] = Phase.IMPLEMENTATION
    services: PhaseServices
    agent: ImplementationAgent
    workspace: WorkspaceLike

    async def execute(self, context: PhaseContext) -> PhaseResult:
        store = self.services.store
        file_paths = context.session.input.file_paths
        files = self.workspace.read_files(file_paths)
        store.push_event(
            context.session_id,
            "dev",
            "agent_started",
            f"Dev agent is implementing iteration {context.iteration}.",
            phase=self.phase,
            iteration=context.iteration,
            data={"files": file_paths, "has_feedback": bool(context.feedback)},
        )
        output = await self.agent.implement(
            task=context.task, files=files, feedback=context.feedback
        )
        applied = self.workspace.apply_changes(output.changes)
        changed = [change.path for change in applied]
        context.ledger.last_changed = changed
        context.ledger.changed_files = dedupe(context.ledger.changed_files + changed)
        store.push_event(
            context.session_id,
            "dev",
            "changes_applied",
            f"Applied {len(applied)} change(s).",
            phase=self.phase,
            iteration=context.iteration,
            data={
                "rationale": output.rationale,
                "changed_paths": changed,
                "modes": {change.path: change.mode for change in applied},
                "commands": output.commands,
            },
        )
        return PhaseResult(
            summary=output.rationale,
            data={"changed_paths": changed},
        )


@dataclass(slots=True)
class GoalValidationPhase:
    phase: ClassVar[Phase] = Phase.GOAL_VALIDATION
    services: PhaseServices
    validator: GoalValidator

    async def execute(self, context: PhaseContext) -> PhaseResult:
        iteration = context.iteration or 1
        store = self.services.store
        artifact = await self.validator.validate(
            session_id=context.session_id,
            iteration=iteration,
            topic=context.session.input.topic,
            file_paths=context.session.input.file_paths,
            changed_paths=context.ledger.last_changed,
        )
        self.services.artifacts.save(context.session_id, artifact)
        store.push_event(
            context.session_id,
            "validator",
            "artifact_created",
            "Goal validation artifact created.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            data={
                "passed": artifact.passed,
                "checks": len(artifact.checks),
                "missing_targets": artifact.missing_targets,
            },
        )
        if artifact.passed:
            store.push_event(
                context.session_id,
                "validator",
                "goal_validation_passed",
                "Requested goals are satisfied.",
                phase=self.phase,
                iteration=iteration,
                artifact_id=artifact.id,
            )
            return PhaseResult(summary=artifact.summary, artifact_id=artifact.id)

        failed_checks = "\n".join(
            f"- {check.label}: {check.detail}" for check in artifact.checks if not check.passed
        )
        suggestions = "\n".join(
            f"{index}. {item}" for index, item in enumerate(artifact.suggestions, start=1)
        )
        feedback = "\n\n".join(
            part
            for part in (
                f"Goal validation failed at iteration {iteration}.",
                f"Failed checks:\n{failed_checks}" if failed_checks else "",
                f"Suggested fixes:\n{suggestions}" if suggestions else "",
            )
            if part
        )
        store.push_event(
            context.session_id,
            "validator",
            "goal_validation_failed",
            "Requested goals are not satisfied.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            data={"missing_targets": artifact.missing_targets},
        )
        return PhaseResult(
            status=PhaseStatus.FAILED,
            passed=False,
            summary=artifact.summary,
            feedback=feedback,
            artifact_id=artifact.id,
        )


@dataclass(slots=True)
class ValidationPhase:
    phase: ClassVar[Phase] = Phase.VALIDATION
    services: PhaseServices
    pipeline: ValidationPipeline

    async def execute(self, context: PhaseContext) -> PhaseResult:
        iteration = context.iteration or 1
        session_id = context.session_id
        store = self.services.store
        commands = resolve_validation_commands(context.session.input, self.services.config)
        store.push_event(
            session_id,
            "test",
            "agent_started",
            f"Running validation pipeline with {len(commands)} command(s).",
            phase=self.phase,
            iteration=iteration,
            data={"commands": [command.command for command in commands]},
        )

        def _started(spec: ValidationCommand) -> None:
            store.push_event(
                session_id,
                "test",
                "validation_command_started",
                f"[{spec.stage}] {spec.command}",
                phase=self.phase,
                iteration=iteration,
                data={"stage": spec.stage, "command": spec.command},
            )

        def _finished(step: ValidationStep) -> None:
            store.push_event(
                session_id,
                "test",
                "validation_command_completed" if step.passed else "validation_command_failed",
                f"[{step.stage}] command {'passed' if step.passed else 'failed'}.",
                phase=self.phase,
                iteration=iteration,
                classification=step.classification,
                data={
                    "stage": step.stage,
                    "command": step.command,
                    "exit_code": step.exit_code,
                    "duration_ms": step.duration_ms,
                    "summary": step.summary,
                    "output_tail": step.output[-STEP_OUTPUT_EVENT_CHARS:],
                },
            )

        outcome = await self.pipeline.run(
            commands,
            task=context.task,
            iteration=iteration,
            on_command_started=_started,
            on_command_completed=_finished,
            on_command_failed=_finished,
        )
        artifact = ValidationArtifact(
            session_id=session_id,
            iteration=iteration,
            passed=outcome.passed,
            summary=outcome.summary,
            steps=outcome.steps,
            classification=outcome.classification,
        )
        self.services.artifacts.save(session_id, artifact)
        store.push_event(
            session_id,
            "test",
            "artifact_created",
            "Validation artifact created.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            classification=artifact.classification,
            data={"passed": artifact.passed, "steps": len(artifact.steps)},
        )

        if outcome.passed:
            store.push_event(
                session_id,
                "test",
                "tests_passed",
                f"Iteration {iteration} passed.",
                phase=self.phase,
                iteration=iteration,
                artifact_id=artifact.id,
            )
            return PhaseResult(
                summary=f"Success on iteration {iteration}.\n\n{outcome.summary}",
                artifact_id=artifact.id,
            )

        store.push_event(
            session_id,
            "test",
            "tests_failed",
            f"Iteration {iteration} failed.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            classification=outcome.classification,
            data={"summary": outcome.summary},
        )
        return PhaseResult(
            status=PhaseStatus.FAILED,
            passed=False,
            summary=outcome.summary,
            feedback=outcome.feedback,
            artifact_id=artifact.id,
            classification=outcome.classification,
        )


def review_feedback(artifact: ReviewArtifact) -> str:
    issues = "\n\n".join(
        f"{index}. {issue.title}\n{issue.detail}".rstrip()
        for index, issue in enumerate(artifact.blocking_issues, start=1)
    )
    plan = "\n".join(f"{index}. {step}" for index, step in enumerate(artifact.fix_plan, start=1))
    return "\n\n".join(
        [
            f"Review blocked at iteration {artifact.iteration}.",
            f"Blocking issues:\n{issues}",
            f"Fix plan:\n{plan or '(none)'}",
        ]
    )


def review_summary(artifact: ReviewArtifact) -> str:
    verdict = (
        f"fix_plan={' | '.join(artifact.fix_plan)}" if artifact.blocking_issues else "approved"
    )
    return (
        f"score={artifact.score}; blocking={len(artifact.blocking_issues)}; "
        f"non_blocking={len(artifact.non_blocking_issues)}; {verdict}"
    )


@dataclass(slots=True)
class ReviewPhase:
    phase: ClassVar[Phase] = Phase.REVIEW
    services: PhaseServices
    agent: ReviewAgent

    async def execute(self, context: PhaseContext) -> PhaseResult:
        iteration = context.iteration or 1
        session_id = context.session_id
        artifacts = self.services.artifacts
        store = self.services.store
        validation = artifacts.get(session_id, Phase.VALIDATION)
        if not isinstance(validation, ValidationArtifact):
            raise OrchestraError("Missing validation artifact for review phase.")
        plan = artifacts.get(session_id, Phase.PLANNING)
        architecture = artifacts.get(session_id, Phase.ARCHITECTURE)
        design = artifacts.get(session_id, Phase.DESIGN)

        store.push_event(
            session_id,
            "reviewer",
            "agent_started",
            "Reviewer agent is generating the review artifact.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=validation.id,
        )
        artifact = await self.agent.create_review(
            session_id=session_id,
            iteration=iteration,
            task=context.task,
            feedback=context.feedback,
            plan=plan if isinstance(plan, PlanArtifact) else None,
            architecture=architecture if isinstance(architecture, ArchitectureArtifact) else None,
            design=design if isinstance(design, DesignArtifact) else None,
            validation_summary=validation.summary,
            validation_classification=validation.classification,
        )
        artifacts.save(session_id, artifact)
        store.push_event(
            session_id,
            "reviewer",
            "artifact_created",
            "Review artifact created.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            data={
                "score": artifact.score,
                "blocking": len(artifact.blocking_issues),
                "non_blocking": len(artifact.non_blocking_issues),
            },
        )

        if artifact.blocking_issues:
            store.push_event(
                session_id,
                "reviewer",
                "review_blocking_detected",
                "Review found blocking issues.",
                phase=self.phase,
                iteration=iteration,
                artifact_id=artifact.id,
                data={
                    "blocking_issues": [issue.title for issue in artifact.blocking_issues],
                    "fix_plan": artifact.fix_plan,
                },
            )
            return PhaseResult(
                passed=False,
                summary=f"Review blocked with {len(artifact.blocking_issues)} issue(s).",
                feedback=review_feedback(artifact),
                artifact_id=artifact.id,
                data={"score": artifact.score},
            )

        store.push_event(
            session_id,
            "reviewer",
            "review_approved",
            "Review approved for packaging.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            data={"score": artifact.score},
        )
        return PhaseResult(
            summary=f"Review approved (score {artifact.score}).",
            artifact_id=artifact.id,
            data={"score": artifact.score},
        )


def fallback_package_draft(
    *,
    topic: str,
    changed_files: list[str],
    test_summary: str,
    review_summary: str,
    risk_notes: list[str],
    advisor_notes: list[str],
) -> PackageDraft:
    files = "\n".join(f"- {path}" for path in changed_files) or "- (none)"
    risks = "\n".join(f"- {note}" for note in risk_notes) or "- none recorded"
    body = "\n\n".join(
        [
            f"## Summary\n{topic}",
            f"## Changed files\n{files}",
            f"## Validation\n{test_summary}",
            f"## Review\n{review_summary}",
            f"## Risks\n{risks}",
        ]
    )
    return PackageDraft(
        title=topic if len(topic) <= 72 else topic[:69].rstrip() + "...",
        body=body,
        changed_files=changed_files,
        risk_notes=risk_notes,
        advisor_notes=advisor_notes,
    )


@dataclass(slots=True)
class PackagingPhase:
    phase: ClassVar[Phase] = Phase.PACKAGING
    services: PhaseServices
    workspace: Workspace
    agent: PackagerAgent | None = None

    def _timeline(self, session_id: str) -> list[str]:
        lines: list[str] = []
        for event in self.services.store.get_events(session_id)[-TIMELINE_EVENTS:]:
            prefix = ""
            if event.phase is not None:
                suffix = f"#{event.iteration}" if event.iteration is not None else ""
                prefix = f"[{event.phase}{suffix}] "
            lines.append(f"{prefix}{event.type}: {event.message}")
        return lines

    async def execute(self, context: PhaseContext) -> PhaseResult:
        session_id = context.session_id
        iteration = context.iteration or max(1, context.session.iteration)
        artifacts = self.services.artifacts
        store = self.services.store
        validation = artifacts.get(session_id, Phase.VALIDATION)
        if not isinstance(validation, ValidationArtifact):
            raise OrchestraError("Packaging requires the latest validation artifact.")
        review = artifacts.get(session_id, Phase.REVIEW)
        review_text = "Review disabled."
        review_risks: list[str] = []
        if isinstance(review, ReviewArtifact):
            review_text = review_summary(review)
            review_risks = [
                f"{issue.title}: {issue.detail}".rstrip(": ")
                for issue in review.non_blocking_issues
            ]

        topic = context.session.input.topic
        changed_files = dedupe(context.ledger.changed_files or context.session.input.file_paths)
        risk_notes = dedupe(context.ledger.risk_notes + review_risks)
        advisor_notes = dedupe(context.ledger.advisor_notes)
        store.push_event(
            session_id,
            "packager",
            "agent_started",
            "Building the pull request package.",
            phase=self.phase,
            iteration=iteration,
            data={"changed_files": len(changed_files)},
        )

        if self.agent is not None:
            draft = await self.agent.create_package(
                iteration=iteration,
                topic=topic,
                changed_files=changed_files,
                test_summary=validation.summary,
                review_summary=review_text,
                risk_notes=risk_notes,
                advisor_notes=advisor_notes,
                timeline=self._timeline(session_id),
            )
        else:
            draft = fallback_package_draft(
                topic=topic,
                changed_files=changed_files,
                test_summary=validation.summary,
                review_summary=review_text,
                risk_notes=risk_notes,
                advisor_notes=advisor_notes,
            )

        output_dir = self.services.config.state.output_dir
        output_path = f"{output_dir}/sessions/{session_id}/pr-package.json"
        artifact = PackageArtifact(
            session_id=session_id,
            iteration=iteration,
            topic=topic,
            title=draft.title,
            body=draft.body,
            changed_files=draft.changed_files or changed_files,
            test_summary=validation.summary,
            review_summary=review_text,
            risk_notes=dedupe(draft.risk_notes) or risk_notes,
            advisor_notes=dedupe(draft.advisor_notes) or advisor_notes,
            output_path=output_path,
        )
        self.workspace.write_json(output_path, to_dict(artifact))
        artifacts.save(session_id, artifact)
        store.push_event(
            session_id,
            "packager",
            "pr_package_created",
            "PR package artifact created.",
            phase=self.phase,
            iteration=iteration,
            artifact_id=artifact.id,
            data={
                "title": artifact.title,
                "changed_files": len(artifact.changed_files),
                "output_path": output_path,
            },
        )
        return PhaseResult(summary=artifact.title, artifact_id=artifact.id)
