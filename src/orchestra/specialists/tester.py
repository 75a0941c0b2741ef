from __future__ import annotations

from orchestra.models import FAILURE_CLASSIFICATIONS, ValidationStage
from orchestra.specialists.base import SpecialistAgent, as_text

OUTPUT_EXCERPT_CHARS = 6000


class TesterAgent(SpecialistAgent):
    role = "test"
    system_prompt = """
You are the Tester specialist.
Read failing command output and explain the root cause in a few sentences.
Name the failing files, tests or rules when the output shows them.
"""

    async def summarize(
        self,
        *,
        task: str,
        stage: ValidationStage,
        command: str,
        exit_code: int,
        output: str,
    ) -> str:
        response = await self.run(
            "Summarize why this validation command failed.",
            {
                "task": task,
                "stage": stage,
                "command": command,
                "exit_code": exit_code,
                "output": output[-OUTPUT_EXCERPT_CHARS:],
            },
        )
        return response.content

    async def classify_failure(
        self,
        *,
        task: str,
        stage: ValidationStage,
        command: str,
        output: str,
        summary: str,
    ) -> str:
        payload = await self.run_json(
            "Classify the failure. Return key classification, one of "
            + ", ".join(sorted(FAILURE_CLASSIFICATIONS))
            + ".",
            {
                "task": task,
                "stage": stage,
                "command": command,
                "summary": summary,
                "output": output[-OUTPUT_EXCERPT_CHARS:],
            },
        )
        return as_text(payload.get("classification"), "unknown").lower()
