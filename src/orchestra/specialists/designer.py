from __future__ import annotations

from dataclasses import asdict

from orchestra.models import (
    ArchitectureArtifact,
    DesignApi,
    DesignArtifact,
    DesignComponent,
    DesignDataModel,
    PlanArtifact,
)
from orchestra.specialists.base import SpecialistAgent, as_dict_list, as_str_list, as_text


class DesignerAgent(SpecialistAgent):
    role = "designer"
    system_prompt = """
You are the Designer specialist.
Describe components, public APIs with their errors, data models,
an ordered implementation checklist and test ideas.
"""

    async def create_design(
        self,
        *,
        session_id: str,
        topic: str,
        plan: PlanArtifact,
        architecture: ArchitectureArtifact,
    ) -> DesignArtifact:
        payload = await self.run_json(
            "Create a design with keys components (name, purpose, files), apis (name, input, "
            "output, errors), data_models (name, fields), implementation_checklist, test_ideas.",
            {"topic": topic, "plan": asdict(plan), "architecture": asdict(architecture)},
        )
        return DesignArtifact(
            session_id=session_id,
            components=[
                DesignComponent(
                    name=as_text(item.get("name")),
                    purpose=as_text(item.get("purpose")),
                    files=as_str_list(item.get("files")),
                )
                for item in as_dict_list(payload.get("components"))
                if as_text(item.get("name"))
            ],
            apis=[
                DesignApi(
                    name=as_text(item.get("name")),
                    input=as_text(item.get("input")),
                    output=as_text(item.get("output")),
                    errors=as_str_list(item.get("errors")),
                )
                for item in as_dict_list(payload.get("apis"))
                if as_text(item.get("name"))
            ],
            data_models=[
                DesignDataModel(
                    name=as_text(item.get("name")),
                    fields=as_str_list(item.get("fields")),
                )
                for item in as_dict_list(payload.get("data_models"))
                if as_text(item.get("name"))
            ],
            implementation_checklist=as_str_list(payload.get("implementation_checklist")),
            test_ideas=as_str_list(payload.get("test_ideas")),
        )
