from __future__ import annotations

from dataclasses import asdict

from orchestra.models import (
    ArchitectureArtifact,
    ArchitectureDecision,
    ArchitectureModule,
    ArchitectureRisk,
    PlanArtifact,
)
from orchestra.specialists.base import SpecialistAgent, as_dict_list, as_str_list, as_text


class ArchitectAgent(SpecialistAgent):
    role = "architect"
    system_prompt = """
You are the Architect specialist.
Split the plan into modules with clear responsibilities and owned files.
Record decisions with their tradeoffs and name the main risks.
"""

    async def create_architecture(
        self, *, session_id: str, topic: str, plan: PlanArtifact
    ) -> ArchitectureArtifact:
        payload = await self.run_json(
            "Create an architecture with keys overview, modules (name, responsibility, files), "
            "decisions (title, rationale, tradeoffs), risks (risk, mitigation).",
            {"topic": topic, "plan": asdict(plan)},
        )
        return ArchitectureArtifact(
            session_id=session_id,
            overview=as_text(payload.get("overview")),
            modules=[
                ArchitectureModule(
                    name=as_text(item.get("name")),
                    responsibility=as_text(item.get("responsibility")),
                    files=as_str_list(item.get("files")),
                )
                for item in as_dict_list(payload.get("modules"))
                if as_text(item.get("name"))
            ],
            decisions=[
                ArchitectureDecision(
                    title=as_text(item.get("title")),
                    rationale=as_text(item.get("rationale")),
                    tradeoffs=as_str_list(item.get("tradeoffs")),
                )
                for item in as_dict_list(payload.get("decisions"))
                if as_text(item.get("title"))
            ],
            risks=[
                ArchitectureRisk(
                    risk=as_text(item.get("risk")),
                    mitigation=as_text(item.get("mitigation")),
                )
                for item in as_dict_list(payload.get("risks"))
                if as_text(item.get("risk"))
            ],
        )
