from __future__ import annotations

from dataclasses import asdict

from orchestra.errors import SpecialistOutputError
from orchestra.models import (
    ArchitectureArtifact,
    DesignArtifact,
    FailureClassification,
    PlanArtifact,
    ReviewArtifact,
    ReviewIssue,
)
from orchestra.specialists.base import SpecialistAgent, as_str_list, as_text

UNTITLED_ISSUE = "Untitled review issue"


def _issues(value: object, prefix: str) -> list[ReviewIssue]:
    """Normalize issue entries; bare strings become titles, untitled dicts use their detail."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    issues: list[ReviewIssue] = []
    for index, item in enumerate(value, start=1):
        if isinstance(item, str):
            if item.strip():
                issues.append(ReviewIssue(id=f"{prefix}{index}", title=item.strip()))
            continue
        if not isinstance(item, dict):
            continue
        detail = as_text(item.get("detail"))
        issues.append(
            ReviewIssue(
                id=as_text(item.get("id")) or f"{prefix}{index}",
                title=as_text(item.get("title")) or detail or UNTITLED_ISSUE,
                detail=detail,
            )
        )
    return issues


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    system_prompt = """
You are the Reviewer specialist.
Review the change against the plan, architecture and design.
Only report an issue as blocking when it must be fixed before merge.
"""

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
    ) -> ReviewArtifact:
        payload = await self.run_json(
            "Review this iteration. Return keys blocking_issues and non_blocking_issues "
            "(id, title, detail), score (0-100) and fix_plan.",
            {
                "task": task,
                "iteration": iteration,
                "feedback": feedback,
                "plan": asdict(plan) if plan else None,
                "architecture": asdict(architecture) if architecture else None,
                "design": asdict(design) if design else None,
                "validation_summary": validation_summary,
                "validation_classification": validation_classification,
            },
        )
        try:
            score = int(float(payload.get("score", 0)))
        except (TypeError, ValueError):
            score = 0
        raw_blocking = payload.get("blocking_issues")
        blocking = _issues(raw_blocking, "B")
        if isinstance(raw_blocking, str):
            raw_blocking = raw_blocking.strip()
        if raw_blocking and not blocking:
            raise SpecialistOutputError(
                "reviewer reported blocking issues in an unreadable shape.", role=self.role
            )
        return ReviewArtifact(
            session_id=session_id,
            iteration=iteration,
            blocking_issues=blocking,
            non_blocking_issues=_issues(payload.get("non_blocking_issues"), "N"),
            score=min(100, max(0, score)),
            fix_plan=as_str_list(payload.get("fix_plan")),
        )
