from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]
ReviewMode = Literal["loop", "final", "off"]

MAX_ITERATIONS_CAP = 20
MAX_MINUTES_CAP = 180


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    type_check_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    specialist_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    max_iterations: int = 6
    max_minutes: int = 45
    review_mode: ReviewMode = "loop"
    goal_validation: bool = False
    autonomous: bool = True
    command_timeout_seconds: float = 15.0
    max_command_output_chars: int = 12000


@dataclass(slots=True)
class StateConfig:
    output_dir: str = ".orchestra"


@dataclass(slots=True)
class OrchestraConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> OrchestraConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestraConfig:
        config = cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            state=StateConfig(**data.get("state", {})),
        )
        if config.workflow.review_mode not in {"loop", "final", "off"}:
            raise ValueError(f"Unsupported review_mode: {config.workflow.review_mode}")
        return config

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "claude_binary": self.backend.claude_binary,
                "codex_binary": self.backend.codex_binary,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "specialist_model": self.agents.specialist_model,
            },
            "workflow": {
                "max_iterations": self.workflow.max_iterations,
                "max_minutes": self.workflow.max_minutes,
                "review_mode": self.workflow.review_mode,
                "goal_validation": self.workflow.goal_validation,
                "autonomous": self.workflow.autonomous,
                "command_timeout_seconds": self.workflow.command_timeout_seconds,
                "max_command_output_chars": self.workflow.max_command_output_chars,
            },
            "state": {
                "output_dir": self.state.output_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestraConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "backend", "agents", "workflow", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrchestraConfig:
    if not path.exists():
        return OrchestraConfig.default()
    return OrchestraConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OrchestraConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
