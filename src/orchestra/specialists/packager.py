from __future__ import annotations

from orchestra.models import PackageDraft
from orchestra.specialists.base import SpecialistAgent, as_str_list, as_text


class PackagerAgent(SpecialistAgent):
    role = "packager"
    system_prompt = """
You are the Packager specialist.
Write a pull request title and body that explain what changed, how it was validated,
and what reviewers should watch.
"""

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
    ) -> PackageDraft:
        payload = await self.run_json(
            "Draft the pull request. Return keys title, body, changed_files, risk_notes, "
            "advisor_notes.",
            {
                "topic": topic,
                "iteration": iteration,
                "changed_files": changed_files,
                "test_summary": test_summary,
                "review_summary": review_summary,
                "risk_notes": risk_notes,
                "advisor_notes": advisor_notes,
                "timeline": timeline,
            },
        )
        return PackageDraft(
            title=as_text(payload.get("title")) or topic,
            body=as_text(payload.get("body")),
            changed_files=as_str_list(payload.get("changed_files")),
            risk_notes=as_str_list(payload.get("risk_notes")),
            advisor_notes=as_str_list(payload.get("advisor_notes")),
        )
