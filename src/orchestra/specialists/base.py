from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from orchestra.backends.base import AgentBackend
from orchestra.errors import SpecialistOutputError

logger = logging.getLogger(__name__)

JSON_REPLY_INSTRUCTION = "Reply with a single JSON object and nothing else."


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text``, tolerating prose and code fences."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            payload, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(payload, dict):
            return payload
        index = text.find("{", index + 1)
    return None


def as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [as_text(item) for item in value if as_text(item)]


def as_dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class SpecialistAgent:
    role: str = "specialist"
    system_prompt: str = "You are a software specialist."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def run(self, instruction: str, context: dict[str, Any]) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(self.system_prompt.strip(), instruction, run_context)
        return SpecialistResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction},
        )

    async def run_json(self, instruction: str, context: dict[str, Any]) -> dict[str, Any]:
        response = await self.run(f"{instruction}\n\n{JSON_REPLY_INSTRUCTION}", context)
        payload = extract_json_object(response.content)
        if payload is None:
            logger.debug("%s reply without JSON: %.200s", self.role, response.content)
            raise SpecialistOutputError(
                f"{self.role} agent reply did not contain a JSON object.", role=self.role
            )
        return payload
