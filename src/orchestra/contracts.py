"""Collaborator interfaces the supervisor and its phases depend on."""

from __future__ import annotations

from typing import Protocol

from orchestra.commands import CommandResult
from orchestra.models import (
    AppliedChange,
    ArchitectureArtifact,
    BudgetSnapshot,
    DesignArtifact,
    DevOutput,
    FailureClassification,
    FileChange,
    GoalValidationArtifact,
    PackageDraft,
    PlanArtifact,
    ReviewArtifact,
    SupervisorAdvice,
    ValidationStage,
)


class CommandRunnerLike(Protocol):
    async def run(self, command: str) -> CommandResult: ...


class WorkspaceLike(Protocol):
    def read_files(self, paths: list[str]) -> dict[str, str]: ...

    def apply_changes(self, changes: list[FileChange]) -> list[AppliedChange]: ...


class PlanningAgent(Protocol):
    async def create_plan(
        self, *, session_id: str, topic: str, file_paths: list[str]
    ) -> PlanArtifact: ...


class ArchitectureAgent(Protocol):
    async def create_architecture(
        self, *, session_id: str, topic: str, plan: PlanArtifact
    ) -> ArchitectureArtifact: ...


class DesignAgent(Protocol):
    async def create_design(
        self,
        *,
        session_id: str,
        topic: str,
        plan: PlanArtifact,
        architecture: ArchitectureArtifact,
    ) -> DesignArtifact: ...


class ImplementationAgent(Protocol):
    async def implement(
        self, *, task: str, files: dict[str, str], feedback: str
    ) -> DevOutput: ...


class ValidationAgent(Protocol):
    async def summarize(
        self,
        *,
        task: str,
        stage: ValidationStage,
        command: str,
        exit_code: int,
        output: str,
    ) -> str: ...


class FailureClassifier(Protocol):
    async def classify_failure(
        self,
        *,
        task: str,
        stage: ValidationStage,
        command: str,
        output: str,
        summary: str,
    ) -> str: ...


class GoalValidator(Protocol):
    async def validate(
        self,
        *,
        session_id: str,
        iteration: int,
        topic: str,
        file_paths: list[str],
        changed_paths: list[str],
    ) -> GoalValidationArtifact: ...


class ReviewAgent(Protocol):
    async def create_review(
        self,
        *,
        session_id: str,
        iteration: int,
        task: str,
        feedback: str,
        plan: PlanArtifact | None,
        architecture: ArchitectureArtifact | None,
        design: DesignArtifact | None,
        validation_summary: str,
        validation_classification: FailureClassification | None,
    ) -> ReviewArtifact: ...


class AdvisorAgent(Protocol):
    async def advise(
        self,
        *,
        iteration: int,
        topic: str,
        feedback: str,
        budget: BudgetSnapshot,
    ) -> SupervisorAdvice: ...


class PackagerAgent(Protocol):
    async def create_package(
        self,
        *,
        iteration: int,
        topic: str,
        changed_files: list[str],
        test_summary: str,
        review_summary: str,
        risk_notes: list[str],
        advisor_notes: list[str],
        timeline: list[str],
    ) -> PackageDraft: ...
