from __future__ import annotations

from dataclasses import asdict

from orchestra.models import BudgetSnapshot, SupervisorAdvice
from orchestra.specialists.base import SpecialistAgent, as_str_list, as_text

ACTIONS = {"continue", "rework", "approve"}


class AdvisorAgent(SpecialistAgent):
    role = "advisor"
    system_prompt = """
You are the Supervisor Advisor.
Given the latest feedback and remaining budget, say what the next iteration should focus on.
Keep feedback lines short and actionable.
"""

    async def advise(
        self,
        *,
        iteration: int,
        topic: str,
        feedback: str,
        budget: BudgetSnapshot,
    ) -> SupervisorAdvice:
        payload = await self.run_json(
            "Advise the next iteration. Return keys focus_summary, feedback_patch, risk_notes, "
            "recommended_action (continue|rework|approve) and confidence (0-1).",
            {
                "topic": topic,
                "iteration": iteration,
                "feedback": feedback,
                "budget": asdict(budget),
            },
        )
        action = as_text(payload.get("recommended_action"), "continue").lower()
        try:
            confidence = float(payload.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return SupervisorAdvice(
            iteration=iteration,
            focus_summary=as_text(payload.get("focus_summary")),
            feedback_patch=as_str_list(payload.get("feedback_patch")),
            risk_notes=as_str_list(payload.get("risk_notes")),
            recommended_action=action if action in ACTIONS else "continue",
            confidence=min(1.0, max(0.0, confidence)),
        )
