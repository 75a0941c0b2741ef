from __future__ import annotations

from orchestra.models import PlanArtifact, PlanRequirement
from orchestra.specialists.base import SpecialistAgent, as_dict_list, as_str_list, as_text

PRIORITIES = {"must", "should", "could"}


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = """
You are the Planner specialist.
Turn the topic into goals, prioritized requirements, constraints, assumptions and done criteria.
Keep every item concrete and verifiable.
"""

    async def create_plan(
        self, *, session_id: str, topic: str, file_paths: list[str]
    ) -> PlanArtifact:
        payload = await self.run_json(
            "Create a delivery plan with keys goals, requirements (id, description, priority "
            "must|should|could), constraints, assumptions, done_criteria.",
            {"topic": topic, "file_paths": file_paths},
        )
        requirements = []
        for index, item in enumerate(as_dict_list(payload.get("requirements")), start=1):
            description = as_text(item.get("description"))
            if not description:
                continue
            priority = as_text(item.get("priority"), "should").lower()
            requirements.append(
                PlanRequirement(
                    id=as_text(item.get("id")) or f"R{index}",
                    description=description,
                    priority=priority if priority in PRIORITIES else "should",
                )
            )
        return PlanArtifact(
            session_id=session_id,
            topic=topic,
            goals=as_str_list(payload.get("goals")) or [topic],
            requirements=requirements,
            constraints=as_str_list(payload.get("constraints")),
            assumptions=as_str_list(payload.get("assumptions")),
            done_criteria=as_str_list(payload.get("done_criteria")),
        )
