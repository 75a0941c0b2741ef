import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from orchestra.commands import CommandResult
from orchestra.config import OrchestraConfig
from orchestra.models import (
    ArchitectureArtifact,
    ArchitectureModule,
    BudgetSnapshot,
    DesignArtifact,
    DesignComponent,
    DevOutput,
    FileChange,
    Phase,
    PhaseStatus,
    PlanArtifact,
    ReviewArtifact,
    ReviewIssue,
    SessionEvent,
    SessionInput,
    SessionStatus,
    SupervisorAdvice,
)
from orchestra.supervisor import AgentRoster, Supervisor, normalize_input
from orchestra.workspace import Workspace

START = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


class FakePlanner:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def create_plan(
        self, *, session_id: str, topic: str, file_paths: list[str]
    ) -> PlanArtifact:
        if self.error is not None:
            raise self.error
        return PlanArtifact(
            session_id=session_id, topic=topic, goals=[topic], done_criteria=["tests pass"]
        )


class FakeArchitect:
    async def create_architecture(
        self, *, session_id: str, topic: str, plan: PlanArtifact
    ) -> ArchitectureArtifact:
        return ArchitectureArtifact(
            session_id=session_id,
            overview=topic,
            modules=[ArchitectureModule(name="greeter", files=["app.py"])],
        )


class FakeDesigner:
    async def create_design(
        self,
        *,
        session_id: str,
        topic: str,
        plan: PlanArtifact,
        architecture: ArchitectureArtifact,
    ) -> DesignArtifact:
        return DesignArtifact(
            session_id=session_id,
            components=[DesignComponent(name="Greeter")],
            implementation_checklist=["print a greeting"],
        )


class FakeCoder:
    def __init__(
        self,
        empty_iterations: set[int] | None = None,
        on_call: Callable[[], None] | None = None,
    ) -> None:
        self.empty_iterations = empty_iterations or set()
        self.on_call = on_call
        self.feedbacks: list[str] = []

    async def implement(self, *, task: str, files: dict[str, str], feedback: str) -> DevOutput:
        self.feedbacks.append(feedback)
        if self.on_call is not None:
            self.on_call()
        iteration = len(self.feedbacks)
        if iteration in self.empty_iterations:
            return DevOutput(rationale="Nothing to change yet.")
        return DevOutput(
            rationale=f"Greeting attempt {iteration}.",
            changes=[FileChange(path="app.py", content=f"print('hello {iteration}')\n")],
        )


class BrokenCoder:
    async def implement(self, *, task: str, files: dict[str, str], feedback: str) -> DevOutput:
        raise RuntimeError("coder transport down")


class FakeTester:
    async def summarize(self, **kwargs) -> str:
        return "Assertion failed in test_app.py."


class ScriptedRunner:
    def __init__(self, exit_codes: list[int]) -> None:
        self.exit_codes = list(exit_codes)
        self.calls: list[str] = []

    async def run(self, command: str) -> CommandResult:
        self.calls.append(command)
        code = self.exit_codes.pop(0) if len(self.exit_codes) > 1 else self.exit_codes[0]
        output = "1 failed, 2 passed" if code else "3 passed"
        return CommandResult(command=command, exit_code=code, output=output, duration_ms=2)


class FakeReviewer:
    def __init__(self, blocking_rounds: int = 0) -> None:
        self.blocking_rounds = blocking_rounds
        self.iterations: list[int] = []

    async def create_review(self, *, session_id: str, iteration: int, **kwargs) -> ReviewArtifact:
        self.iterations.append(iteration)
        if len(self.iterations) <= self.blocking_rounds:
            return ReviewArtifact(
                session_id=session_id,
                iteration=iteration,
                blocking_issues=[ReviewIssue(id="B1", title="Missing newline", detail="Add it.")],
                score=40,
                fix_plan=["Add the newline"],
            )
        return ReviewArtifact(
            session_id=session_id,
            iteration=iteration,
            non_blocking_issues=[ReviewIssue(id="N1", title="Naming", detail="Rename app.py")],
            score=90,
        )


class FakeAdvisor:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def advise(
        self, *, iteration: int, topic: str, feedback: str, budget: BudgetSnapshot
    ) -> SupervisorAdvice:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SupervisorAdvice(
            iteration=iteration,
            focus_summary="Keep the greeting short.",
            feedback_patch=["Use print", "Use print", "Keep one line"],
            risk_notes=["Output format may change"],
        )


class FakeClock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        return self.now


def _config(review_mode: str = "loop", goal_validation: bool = False) -> OrchestraConfig:
    config = OrchestraConfig.default()
    config.project.lint_command = ""
    config.workflow.review_mode = review_mode  # type: ignore[assignment]
    config.workflow.goal_validation = goal_validation
    return config


def _supervisor(
    tmp_path: Path,
    *,
    runner: ScriptedRunner | None = None,
    config: OrchestraConfig | None = None,
    planner: FakePlanner | None = None,
    coder: FakeCoder | BrokenCoder | None = None,
    reviewer: FakeReviewer | None = None,
    advisor: FakeAdvisor | None = None,
    clock: FakeClock | None = None,
) -> Supervisor:
    agents = AgentRoster(
        planner=planner or FakePlanner(),
        architect=FakeArchitect(),
        designer=FakeDesigner(),
        coder=coder or FakeCoder(),
        tester=FakeTester(),
        reviewer=reviewer,
        advisor=advisor,
    )
    return Supervisor(
        config=config or _config(),
        agents=agents,
        workspace=Workspace(tmp_path),
        runner=runner or ScriptedRunner([0]),
        clock=clock,
    )


def _input(**overrides) -> SessionInput:
    values = {
        "topic": "Add greeting",
        "file_paths": ["app.py"],
        "test_command": "pytest -q",
        "max_iterations": 3,
    }
    values.update(overrides)
    return SessionInput(**values)


def _event_types(supervisor: Supervisor, session_id: str) -> list[str]:
    return [event.type for event in supervisor.store.get_events(session_id)]


def test_session_succeeds_on_first_iteration(tmp_path: Path) -> None:
    reviewer = FakeReviewer()
    supervisor = _supervisor(tmp_path, reviewer=reviewer)

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert session.iteration == 1
    assert session.current_phase is None
    assert set(session.phase_statuses) == {
        Phase.PLANNING,
        Phase.ARCHITECTURE,
        Phase.DESIGN,
        Phase.IMPLEMENTATION,
        Phase.VALIDATION,
        Phase.REVIEW,
        Phase.PACKAGING,
    }
    assert all(status == PhaseStatus.COMPLETED for status in session.phase_statuses.values())
    assert set(session.artifact_refs) == set(session.phase_statuses) - {Phase.IMPLEMENTATION}
    assert session.final_summary is not None
    assert "Success on iteration 1." in session.final_summary
    assert "Review approved (score 90)." in session.final_summary
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "print('hello 1')\n"

    types = _event_types(supervisor, session.id)
    assert types[0] == "session_started"
    assert types[-1] == "session_finished"
    for expected in ("iteration_started", "changes_applied", "tests_passed", "review_approved"):
        assert expected in types
    assert types.index("tests_passed") < types.index("review_approved")
    assert types.index("review_approved") < types.index("pr_package_created")


def test_package_document_is_written(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, reviewer=FakeReviewer())

    session = asyncio.run(supervisor.run(_input()))

    package_path = tmp_path / ".orchestra" / "sessions" / session.id / "pr-package.json"
    payload = json.loads(package_path.read_text(encoding="utf-8"))
    assert payload["title"] == "Add greeting"
    assert payload["changed_files"] == ["app.py"]
    assert payload["phase"] == "packaging"
    assert payload["review_summary"].startswith("score=90; blocking=0; non_blocking=1")
    assert payload["risk_notes"] == ["Naming: Rename app.py"]
    assert "## Changed files\n- app.py" in payload["body"]
    assert payload["id"] == session.artifact_refs[Phase.PACKAGING]


def test_validation_failure_feeds_next_iteration(tmp_path: Path) -> None:
    runner = ScriptedRunner([1, 0])
    coder = FakeCoder()
    supervisor = _supervisor(tmp_path, runner=runner, coder=coder)

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert session.iteration == 2
    assert len(coder.feedbacks) == 2
    assert "Validation failed at iteration 1, stage: test" in coder.feedbacks[1]
    assert "Validation failed" not in coder.feedbacks[0]
    assert coder.feedbacks[1].startswith("Artifact context: ")
    history = supervisor.artifacts.get_validation_artifacts(session.id)
    assert [(item.iteration, item.passed) for item in history] == [(1, False), (2, True)]
    assert history[0].classification == "test"
    assert "tests_failed" in _event_types(supervisor, session.id)


def test_artifact_context_summarizes_earlier_phases(tmp_path: Path) -> None:
    coder = FakeCoder()
    supervisor = _supervisor(tmp_path, coder=coder)

    asyncio.run(supervisor.run(_input()))

    context = json.loads(coder.feedbacks[0].removeprefix("Artifact context: "))
    assert set(context["refs"]) == {"planning", "architecture", "design"}
    assert context["plan"]["goals"] == ["Add greeting"]
    assert context["architecture"] == [{"name": "greeter", "files": ["app.py"]}]
    assert context["design"]["checklist"] == ["print a greeting"]


def test_iteration_budget_exhaustion_fails_session(tmp_path: Path) -> None:
    runner = ScriptedRunner([1])
    reviewer = FakeReviewer()
    supervisor = _supervisor(tmp_path, runner=runner, reviewer=reviewer)

    session = asyncio.run(supervisor.run(_input(max_iterations=2)))

    assert session.status == SessionStatus.FAILED
    assert session.iteration == 2
    assert session.budget is not None
    assert session.budget.exhausted_reason == "iterations"
    assert session.budget.remaining_iterations == 0
    assert session.final_summary == "Budget exhausted (iterations) before iteration 3."
    assert session.phase_statuses[Phase.VALIDATION] == PhaseStatus.FAILED
    assert session.phase_statuses[Phase.REVIEW] == PhaseStatus.SKIPPED
    assert session.phase_statuses[Phase.PACKAGING] == PhaseStatus.SKIPPED
    assert reviewer.iterations == []
    assert len(runner.calls) == 2
    types = _event_types(supervisor, session.id)
    assert types[-2:] == ["budget_exhausted", "session_finished"]


def test_minutes_budget_exhaustion_fails_session(tmp_path: Path) -> None:
    clock = FakeClock()

    def _advance() -> None:
        clock.now += timedelta(minutes=50)

    supervisor = _supervisor(
        tmp_path,
        runner=ScriptedRunner([1]),
        coder=FakeCoder(on_call=_advance),
        clock=clock,
    )

    session = asyncio.run(supervisor.run(_input(max_iterations=5, max_minutes=45)))

    assert session.status == SessionStatus.FAILED
    assert session.iteration == 1
    assert session.budget is not None
    assert session.budget.exhausted_reason == "minutes"
    assert session.phase_statuses[Phase.PACKAGING] == PhaseStatus.SKIPPED


def test_pre_loop_failure_skips_remaining_phases(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, planner=FakePlanner(RuntimeError("planner down")))

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.FAILED
    assert session.iteration == 0
    assert session.phase_statuses[Phase.PLANNING] == PhaseStatus.FAILED
    assert all(
        status == PhaseStatus.SKIPPED
        for phase, status in session.phase_statuses.items()
        if phase != Phase.PLANNING
    )
    assert session.final_summary == "Phase planning failed: planner down"
    failed = [
        event for event in supervisor.store.get_events(session.id) if event.type == "phase_failed"
    ]
    assert failed[0].data["error_type"] == "runtime_error"
    assert failed[0].phase == Phase.PLANNING


def test_loop_phase_error_fails_session(tmp_path: Path) -> None:
    runner = ScriptedRunner([0])
    supervisor = _supervisor(
        tmp_path, runner=runner, coder=BrokenCoder(), reviewer=FakeReviewer()
    )

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.FAILED
    assert session.iteration == 1
    assert session.final_summary == "Phase implementation failed: coder transport down"
    assert session.phase_statuses[Phase.IMPLEMENTATION] == PhaseStatus.FAILED
    for phase in (Phase.VALIDATION, Phase.REVIEW, Phase.PACKAGING):
        assert session.phase_statuses[phase] == PhaseStatus.SKIPPED
    assert all(status.is_terminal for status in session.phase_statuses.values())
    assert runner.calls == []
    failed = [
        event for event in supervisor.store.get_events(session.id) if event.type == "phase_failed"
    ]
    assert [(event.phase, event.data["error_type"]) for event in failed] == [
        (Phase.IMPLEMENTATION, "runtime_error")
    ]


def test_final_review_blocking_issues_do_not_block_packaging(tmp_path: Path) -> None:
    reviewer = FakeReviewer(blocking_rounds=1)
    supervisor = _supervisor(tmp_path, reviewer=reviewer, config=_config(review_mode="final"))

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert reviewer.iterations == [1]
    assert session.final_summary is not None
    assert "Review blocked with 1 issue(s)." in session.final_summary
    package = supervisor.artifacts.get(session.id, Phase.PACKAGING)
    assert package is not None
    assert package.review_summary.startswith("score=40; blocking=1")


def test_blocking_review_triggers_another_iteration(tmp_path: Path) -> None:
    reviewer = FakeReviewer(blocking_rounds=1)
    coder = FakeCoder()
    supervisor = _supervisor(tmp_path, reviewer=reviewer, coder=coder)

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert session.iteration == 2
    assert reviewer.iterations == [1, 2]
    assert "Review blocked at iteration 1." in coder.feedbacks[1]
    assert "1. Missing newline" in coder.feedbacks[1]
    assert "review_blocking_detected" in _event_types(supervisor, session.id)
    context = json.loads(coder.feedbacks[1].split("\n\n", 1)[0].removeprefix("Artifact context: "))
    assert context["review"] == {"score": 40, "blocking": 1}


def test_final_review_runs_once_after_loop(tmp_path: Path) -> None:
    reviewer = FakeReviewer()
    supervisor = _supervisor(
        tmp_path,
        runner=ScriptedRunner([1, 0]),
        reviewer=reviewer,
        config=_config(review_mode="final"),
    )

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert reviewer.iterations == [2]
    assert session.phase_statuses[Phase.REVIEW] == PhaseStatus.COMPLETED


def test_review_off_removes_phase(tmp_path: Path) -> None:
    reviewer = FakeReviewer()
    supervisor = _supervisor(tmp_path, reviewer=reviewer, config=_config(review_mode="off"))

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert Phase.REVIEW not in session.phase_statuses
    assert reviewer.iterations == []
    package = supervisor.artifacts.get(session.id, Phase.PACKAGING)
    assert package is not None
    assert package.review_summary == "Review disabled."


def test_goal_validation_failure_skips_command_run(tmp_path: Path) -> None:
    runner = ScriptedRunner([0])
    coder = FakeCoder(empty_iterations={1})
    supervisor = _supervisor(
        tmp_path, runner=runner, coder=coder, config=_config(goal_validation=True)
    )

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert session.iteration == 2
    assert runner.calls == ["pytest -q"]
    assert "Goal validation failed at iteration 1." in coder.feedbacks[1]
    assert session.phase_statuses[Phase.GOAL_VALIDATION] == PhaseStatus.COMPLETED
    types = _event_types(supervisor, session.id)
    assert types.index("goal_validation_failed") < types.index("goal_validation_passed")


def test_advisor_guidance_is_merged_into_feedback(tmp_path: Path) -> None:
    advisor = FakeAdvisor()
    coder = FakeCoder()
    supervisor = _supervisor(tmp_path, advisor=advisor, coder=coder)

    session = asyncio.run(supervisor.run(_input()))

    assert advisor.calls == 1
    assert coder.feedbacks[0].endswith("Advisor guidance:\nUse print\nKeep one line")
    package = supervisor.artifacts.get(session.id, Phase.PACKAGING)
    assert package is not None
    assert package.advisor_notes == ["Keep the greeting short."]
    assert package.risk_notes == ["Output format may change"]


def test_advisor_failure_does_not_stop_session(tmp_path: Path) -> None:
    advisor = FakeAdvisor(RuntimeError("advisor offline"))
    supervisor = _supervisor(tmp_path, advisor=advisor)

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.SUCCESS
    assert "advisor_error" in _event_types(supervisor, session.id)


def test_non_autonomous_session_skips_advisor(tmp_path: Path) -> None:
    advisor = FakeAdvisor()
    supervisor = _supervisor(tmp_path, advisor=advisor)

    session = asyncio.run(supervisor.run(_input(autonomous=False)))

    assert session.status == SessionStatus.SUCCESS
    assert session.input.autonomous is False
    assert advisor.calls == 0


def test_unhandled_error_fails_session(tmp_path: Path, monkeypatch) -> None:
    supervisor = _supervisor(tmp_path)

    def _explode(*args, **kwargs) -> str:
        raise RuntimeError("context exploded")

    monkeypatch.setattr(supervisor, "compose_feedback", _explode)

    session = asyncio.run(supervisor.run(_input()))

    assert session.status == SessionStatus.FAILED
    assert session.final_summary == "Unhandled error: context exploded"
    assert session.phase_statuses[Phase.DESIGN] == PhaseStatus.COMPLETED
    assert session.phase_statuses[Phase.IMPLEMENTATION] == PhaseStatus.SKIPPED
    errors = [event for event in supervisor.store.get_events(session.id) if event.type == "error"]
    assert errors[0].data == {"error_type": "unhandled_error"}


def test_subscriber_sees_every_event_then_sentinel(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)

    async def _collect() -> tuple[str, list[SessionEvent]]:
        session_id = supervisor.start(_input())
        channel = supervisor.store.subscribe(session_id)
        received: list[SessionEvent] = []
        while (event := await channel.get()) is not None:
            received.append(event)
        return session_id, received

    session_id, received = asyncio.run(_collect())

    assert [event.id for event in received] == [
        event.id for event in supervisor.store.get_events(session_id)
    ]
    assert received[-1].type == "session_finished"


def test_start_requires_running_loop(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)

    with pytest.raises(RuntimeError):
        supervisor.start(_input())
    assert supervisor.store.list() == []


def test_start_rejects_missing_topic(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)

    async def _start() -> str:
        return supervisor.start(SessionInput(topic="  "))

    with pytest.raises(ValueError):
        asyncio.run(_start())


def test_normalize_input_applies_defaults_and_caps() -> None:
    config = OrchestraConfig.default()

    normalized = normalize_input(
        SessionInput(
            task="  Fix the parser ",
            file_paths=["a.py", "a.py", " b.py "],
            max_attempts=50,
            max_minutes=500,
        ),
        config,
    )

    assert normalized.topic == "Fix the parser"
    assert normalized.file_paths == ["a.py", "b.py"]
    assert normalized.max_iterations == 20
    assert normalized.max_minutes == 180
    assert normalized.autonomous is True


def test_normalize_input_prefers_max_iterations() -> None:
    config = OrchestraConfig.default()

    normalized = normalize_input(
        SessionInput(topic="t", max_iterations=2, max_attempts=9, max_minutes=0), config
    )
    defaults = normalize_input(SessionInput(topic="t"), config)

    assert normalized.max_iterations == 2
    assert normalized.max_minutes == 45
    assert defaults.max_iterations == 6
