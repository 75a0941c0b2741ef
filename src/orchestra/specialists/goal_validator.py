from __future__ import annotations

from orchestra.models import GoalCheck, GoalValidationArtifact
from orchestra.workspace import Workspace


class WorkspaceGoalValidator:
    """Checks that an iteration produced the files the session asked for."""

    role = "validator"

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def validate(
        self,
        *,
        session_id: str,
        iteration: int,
        topic: str,
        file_paths: list[str],
        changed_paths: list[str],
    ) -> GoalValidationArtifact:
        checks: list[GoalCheck] = []
        missing: list[str] = []
        suggestions: list[str] = []

        for path in file_paths:
            has_content = bool(self.workspace.read_text(path).strip())
            checks.append(
                GoalCheck(
                    id=f"target:{path}",
                    label=f"Target {path} exists with content",
                    passed=has_content,
                    detail="present" if has_content else "missing or empty",
                )
            )
            if not has_content:
                missing.append(path)
                suggestions.append(f"Create {path} with an implementation for: {topic}")

        changed = bool(changed_paths)
        checks.append(
            GoalCheck(
                id="changes",
                label="Iteration changed at least one file",
                passed=changed,
                detail=", ".join(changed_paths) if changed else "no files changed",
            )
        )
        if not changed:
            suggestions.append("Return at least one file change that addresses the topic.")

        passed_count = sum(1 for check in checks if check.passed)
        return GoalValidationArtifact(
            session_id=session_id,
            iteration=iteration,
            passed=passed_count == len(checks),
            summary=f"{passed_count}/{len(checks)} goal checks passed.",
            checks=checks,
            missing_targets=missing,
            suggestions=suggestions,
        )
