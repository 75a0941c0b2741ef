from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

FailureClassification = Literal["lint", "type", "test", "runtime", "unknown"]
ValidationStage = Literal["lint", "type", "test", "custom"]
ExhaustedReason = Literal["iterations", "minutes", "none"]
AppliedChangeMode = Literal["patch", "fallback_content", "content"]
AgentRole = Literal[
    "supervisor",
    "planner",
    "architect",
    "designer",
    "dev",
    "validator",
    "test",
    "reviewer",
    "advisor",
    "packager",
]

FAILURE_CLASSIFICATIONS: frozenset[str] = frozenset({"lint", "type", "test", "runtime", "unknown"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def _new_id() -> str:
    return uuid4().hex


class Phase(StrEnum):
    PLANNING = "planning"
    ARCHITECTURE = "architecture"
    DESIGN = "design"
    IMPLEMENTATION = "implementation"
    GOAL_VALIDATION = "goal_validation"
    VALIDATION = "validation"
    REVIEW = "review"
    PACKAGING = "packaging"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)
PRE_LOOP_PHASES: tuple[Phase, ...] = (Phase.PLANNING, Phase.ARCHITECTURE, Phase.DESIGN)
LOOP_PHASES: frozenset[Phase] = frozenset(
    {Phase.IMPLEMENTATION, Phase.GOAL_VALIDATION, Phase.VALIDATION, Phase.REVIEW}
)
SINGLETON_PHASES: frozenset[Phase] = frozenset(
    {Phase.PLANNING, Phase.ARCHITECTURE, Phase.DESIGN, Phase.PACKAGING}
)


class PhaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED}


class SessionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionStatus.SUCCESS, SessionStatus.FAILED}


@dataclass(slots=True)
class SessionInput:
    topic: str = ""
    file_paths: list[str] = field(default_factory=list)
    task: str | None = None
    workspace_root: str = "."
    test_command: str | None = None
    validation_commands: list[str] = field(default_factory=list)
    max_iterations: int | None = None
    max_attempts: int | None = None
    max_minutes: int | None = None
    autonomous: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInput:
        return cls(
            topic=str(data.get("topic") or ""),
            file_paths=[str(item) for item in data.get("file_paths", []) or []],
            task=data.get("task"),
            workspace_root=str(data.get("workspace_root") or "."),
            test_command=data.get("test_command"),
            validation_commands=[str(item) for item in data.get("validation_commands", []) or []],
            max_iterations=data.get("max_iterations"),
            max_attempts=data.get("max_attempts"),
            max_minutes=data.get("max_minutes"),
            autonomous=data.get("autonomous"),
        )


@dataclass(slots=True)
class BudgetSnapshot:
    max_iterations: int
    remaining_iterations: int
    max_minutes: int
    started_at: str
    deadline_at: str
    elapsed_ms: int
    exhausted_reason: ExhaustedReason = "none"


@dataclass(slots=True)
class ValidationCommand:
    stage: ValidationStage
    command: str


@dataclass(slots=True)
class ValidationStep:
    stage: ValidationStage
    command: str
    passed: bool
    exit_code: int
    output: str
    summary: str
    duration_ms: int
    classification: FailureClassification | None = None


@dataclass(slots=True)
class FileChange:
    path: str
    patch: str | None = None
    fallback_content: str | None = None
    content: str | None = None


@dataclass(slots=True)
class AppliedChange:
    path: str
    mode: AppliedChangeMode


@dataclass(slots=True)
class DevOutput:
    rationale: str
    changes: list[FileChange] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanRequirement:
    id: str
    description: str
    priority: Literal["must", "should", "could"] = "should"


@dataclass(slots=True)
class PlanArtifact:
    session_id: str
    topic: str
    goals: list[str] = field(default_factory=list)
    requirements: list[PlanRequirement] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    done_criteria: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.PLANNING, init=False)


@dataclass(slots=True)
class ArchitectureModule:
    name: str
    responsibility: str = ""
    files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ArchitectureDecision:
    title: str
    rationale: str = ""
    tradeoffs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ArchitectureRisk:
    risk: str
    mitigation: str = ""


@dataclass(slots=True)
class ArchitectureArtifact:
    session_id: str
    overview: str = ""
    modules: list[ArchitectureModule] = field(default_factory=list)
    decisions: list[ArchitectureDecision] = field(default_factory=list)
    risks: list[ArchitectureRisk] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.ARCHITECTURE, init=False)


@dataclass(slots=True)
class DesignComponent:
    name: str
    purpose: str = ""
    files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DesignApi:
    name: str
    input: str = ""
    output: str = ""
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DesignDataModel:
    name: str
    fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DesignArtifact:
    session_id: str
    components: list[DesignComponent] = field(default_factory=list)
    apis: list[DesignApi] = field(default_factory=list)
    data_models: list[DesignDataModel] = field(default_factory=list)
    implementation_checklist: list[str] = field(default_factory=list)
    test_ideas: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.DESIGN, init=False)


@dataclass(slots=True)
class GoalCheck:
    id: str
    label: str
    passed: bool
    detail: str = ""


@dataclass(slots=True)
class GoalValidationArtifact:
    session_id: str
    iteration: int
    passed: bool
    summary: str
    checks: list[GoalCheck] = field(default_factory=list)
    missing_targets: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.GOAL_VALIDATION, init=False)


@dataclass(slots=True)
class ValidationArtifact:
    session_id: str
    iteration: int
    passed: bool
    summary: str
    steps: list[ValidationStep] = field(default_factory=list)
    classification: FailureClassification | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.VALIDATION, init=False)


@dataclass(slots=True)
class ReviewIssue:
    id: str
    title: str
    detail: str = ""


@dataclass(slots=True)
class ReviewArtifact:
    session_id: str
    iteration: int
    blocking_issues: list[ReviewIssue] = field(default_factory=list)
    non_blocking_issues: list[ReviewIssue] = field(default_factory=list)
    score: int = 0
    fix_plan: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.REVIEW, init=False)


@dataclass(slots=True)
class PackageDraft:
    title: str
    body: str
    changed_files: list[str] = field(default_factory=list)
    risk_notes: list[str] = field(default_factory=list)
    advisor_notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PackageArtifact:
    session_id: str
    iteration: int
    topic: str
    title: str
    body: str
    changed_files: list[str] = field(default_factory=list)
    test_summary: str = ""
    review_summary: str = ""
    risk_notes: list[str] = field(default_factory=list)
    advisor_notes: list[str] = field(default_factory=list)
    output_path: str = ""
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)
    phase: Phase = field(default=Phase.PACKAGING, init=False)


Artifact = (
    PlanArtifact
    | ArchitectureArtifact
    | DesignArtifact
    | GoalValidationArtifact
    | ValidationArtifact
    | ReviewArtifact
    | PackageArtifact
)


@dataclass(slots=True)
class SupervisorAdvice:
    iteration: int
    focus_summary: str
    feedback_patch: list[str] = field(default_factory=list)
    risk_notes: list[str] = field(default_factory=list)
    recommended_action: Literal["continue", "rework", "approve"] = "continue"
    confidence: float = 0.5


@dataclass(slots=True)
class SessionEvent:
    session_id: str
    role: AgentRole
    type: str
    message: str
    phase: Phase | None = None
    iteration: int | None = None
    artifact_id: str | None = None
    classification: FailureClassification | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass(slots=True)
class SessionState:
    id: str
    input: SessionInput
    status: SessionStatus = SessionStatus.PENDING
    iteration: int = 0
    current_phase: Phase | None = None
    phase_statuses: dict[Phase, PhaseStatus] = field(default_factory=dict)
    artifact_refs: dict[Phase, str] = field(default_factory=dict)
    budget: BudgetSnapshot | None = None
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None
    final_summary: str | None = None


def to_dict(value: Any) -> dict[str, Any]:
    """Render a model dataclass as plain JSON-compatible data."""
    payload = asdict(value)
    return _plain(payload)


def _plain(value: Any) -> Any:
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, dict):
        return {str(_plain(key)): _plain(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(item) for item in value]
    return value
