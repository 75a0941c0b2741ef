from __future__ import annotations

from orchestra.models import DevOutput, FileChange
from orchestra.specialists.base import SpecialistAgent, as_dict_list, as_str_list, as_text


class CoderAgent(SpecialistAgent):
    role = "dev"
    system_prompt = """
You are the Coder specialist.
Implement exactly what the task and feedback ask for and match repository conventions.
Prefer minimal unified diffs; include the full new file text as fallback_content.
"""

    async def implement(self, *, task: str, files: dict[str, str], feedback: str) -> DevOutput:
        payload = await self.run_json(
            "Implement the task. Return keys rationale, changes (path, patch, fallback_content) "
            "and optional commands.",
            {"task": task, "files": files, "feedback": feedback},
        )
        changes: list[FileChange] = []
        for item in as_dict_list(payload.get("changes")):
            path = as_text(item.get("path"))
            if not path:
                continue
            patch = item.get("patch")
            fallback = item.get("fallback_content")
            content = item.get("content")
            changes.append(
                FileChange(
                    path=path,
                    patch=patch if isinstance(patch, str) and patch.strip() else None,
                    fallback_content=fallback if isinstance(fallback, str) else None,
                    content=content if isinstance(content, str) else None,
                )
            )
        return DevOutput(
            rationale=as_text(payload.get("rationale"), "No rationale provided."),
            changes=changes,
            commands=as_str_list(payload.get("commands")),
        )
