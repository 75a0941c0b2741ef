from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from orchestra.config import OrchestraConfig
from orchestra.contracts import CommandRunnerLike, FailureClassifier, ValidationAgent
from orchestra.models import (
    FAILURE_CLASSIFICATIONS,
    FailureClassification,
    SessionInput,
    ValidationCommand,
    ValidationStage,
    ValidationStep,
)

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000

RUNTIME_PATTERN = re.compile(
    r"\b(timed out|timeout|spawn|enoent|command not found|no such file or directory|"
    r"killed|segmentation fault|out of memory)\b",
    re.IGNORECASE,
)
LINT_PATTERN = re.compile(r"\b(lint|eslint|ruff|flake8|pylint|stylelint)\b", re.IGNORECASE)
TYPE_PATTERN = re.compile(
    r"\b(tsc|typecheck|type check|type-check|mypy|pyright|type error)\b", re.IGNORECASE
)
TEST_PATTERN = re.compile(
    r"\b(test|tests|pytest|jest|vitest|mocha|unittest|assertion|assertionerror)\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class ValidationOutcome:
    passed: bool
    summary: str
    steps: list[ValidationStep] = field(default_factory=list)
    classification: FailureClassification | None = None
    feedback: str = ""


StepHook = Callable[[ValidationStep], None]
CommandHook = Callable[[ValidationCommand], None]


def infer_stage(command: str) -> ValidationStage:
    normalized = command.lower()
    if "lint" in normalized or re.search(r"\b(ruff|flake8|eslint)\b", normalized):
        return "lint"
    if re.search(r"\b(typecheck|tsc|mypy|pyright)\b", normalized) or "type-check" in normalized:
        return "type"
    if re.search(r"\b(test|tests|pytest|jest|vitest|mocha)\b", normalized):
        return "test"
    return "custom"


def resolve_validation_commands(
    session_input: SessionInput,
    config: OrchestraConfig,
) -> list[ValidationCommand]:
    """Return the ordered commands a session validates with.

    Explicit ``validation_commands`` win. Otherwise the lint, type and test triple is built
    from ``project.lint_command``, ``project.type_check_command`` and the session or project
    test command. Empty entries are dropped, and ``type_check_command`` is empty by default,
    so an unconfigured project validates with lint and test only.
    """
    explicit = [command.strip() for command in session_input.validation_commands]
    explicit = [command for command in explicit if command]
    if explicit:
        return [
            ValidationCommand(stage=infer_stage(command), command=command) for command in explicit
        ]

    test_command = (session_input.test_command or config.project.test_command or "").strip()
    if not test_command:
        raise ValueError("Session requires a test command or validation commands.")

    defaults: list[ValidationCommand] = []
    lint_command = config.project.lint_command.strip()
    if lint_command:
        defaults.append(ValidationCommand(stage="lint", command=lint_command))
    type_check_command = config.project.type_check_command.strip()
    if type_check_command:
        defaults.append(ValidationCommand(stage="type", command=type_check_command))
    defaults.append(ValidationCommand(stage="test", command=test_command))
    return defaults


def classify_by_rules(
    stage: ValidationStage, summary: str, output: str
) -> FailureClassification | None:
    if stage in {"lint", "type", "test"}:
        return stage  # type: ignore[return-value]
    text = f"{summary}\n{output}"
    if RUNTIME_PATTERN.search(text):
        return "runtime"
    if LINT_PATTERN.search(text):
        return "lint"
    if TYPE_PATTERN.search(text):
        return "type"
    if TEST_PATTERN.search(text):
        return "test"
    return None


def _output_tail(output: str) -> str:
    return output[-OUTPUT_TAIL_CHARS:]


class ValidationPipeline:
    """Runs validation commands in order and stops at the first failure."""

    def __init__(
        self,
        runner: CommandRunnerLike,
        agent: ValidationAgent,
        *,
        classifier: FailureClassifier | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.runner = runner
        self.agent = agent
        self.classifier = classifier
        self.timeout_seconds = timeout_seconds

    async def _summarize(
        self, spec: ValidationCommand, task: str, exit_code: int, output: str
    ) -> str:
        try:
            summary = await self.agent.summarize(
                task=task,
                stage=spec.stage,
                command=spec.command,
                exit_code=exit_code,
                output=output,
            )
        except Exception as exc:
            logger.warning("validation summary failed for %s: %s", spec.command, exc)
            summary = ""
        return summary.strip() or f"Command exited with code {exit_code}."

    async def _classify(
        self,
        *,
        task: str,
        stage: ValidationStage,
        command: str,
        output: str,
        summary: str,
    ) -> FailureClassification:
        ruled = classify_by_rules(stage, summary, output)
        if ruled is not None:
            return ruled
        if self.classifier is None:
            return "unknown"
        try:
            answer = await self.classifier.classify_failure(
                task=task,
                stage=stage,
                command=command,
                output=output,
                summary=summary,
            )
        except Exception as exc:
            logger.warning("failure classifier raised, using 'unknown': %s", exc)
            return "unknown"
        normalized = str(answer).strip().lower()
        if normalized in FAILURE_CLASSIFICATIONS:
            return normalized  # type: ignore[return-value]
        return "unknown"

    async def run(
        self,
        commands: list[ValidationCommand],
        *,
        task: str,
        iteration: int,
        on_command_started: CommandHook | None = None,
        on_command_completed: StepHook | None = None,
        on_command_failed: StepHook | None = None,
    ) -> ValidationOutcome:
        steps: list[ValidationStep] = []
        for spec in commands:
            if on_command_started:
                on_command_started(spec)
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self.runner.run(spec.command), timeout=self.timeout_seconds
                )
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                if isinstance(exc, TimeoutError):
                    message = f"Validation command timed out after {self.timeout_seconds:.1f}s"
                output = f'Runtime failure while running "{spec.command}": {message}'
                step = ValidationStep(
                    stage=spec.stage,
                    command=spec.command,
                    passed=False,
                    exit_code=-1,
                    output=output,
                    summary=message,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    classification="runtime",
                )
                steps.append(step)
                logger.info("validation %s could not run: %s", spec.command, message)
                if on_command_failed:
                    on_command_failed(step)
                return ValidationOutcome(
                    passed=False,
                    summary=message,
                    steps=steps,
                    classification="runtime",
                    feedback="\n\n".join(
                        [
                            f"Validation runtime failure at iteration {iteration}, "
                            f"stage: {spec.stage}",
                            f"Command: {spec.command}",
                            "Classification: runtime",
                            f"Summary:\n{message}",
                            f"Output:\n{_output_tail(output)}",
                        ]
                    ),
                )

            if result.exit_code == 0:
                step = ValidationStep(
                    stage=spec.stage,
                    command=spec.command,
                    passed=True,
                    exit_code=0,
                    output=result.output,
                    summary="Command exited with code 0.",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                steps.append(step)
                if on_command_completed:
                    on_command_completed(step)
                continue

            summary = await self._summarize(spec, task, result.exit_code, result.output)
            classification = await self._classify(
                task=task,
                stage=spec.stage,
                command=spec.command,
                output=result.output,
                summary=summary,
            )
            step = ValidationStep(
                stage=spec.stage,
                command=spec.command,
                passed=False,
                exit_code=result.exit_code,
                output=result.output,
                summary=summary,
                duration_ms=int((time.monotonic() - started) * 1000),
                classification=classification,
            )
            steps.append(step)
            if on_command_failed:
                on_command_failed(step)
            return ValidationOutcome(
                passed=False,
                summary=summary,
                steps=steps,
                classification=classification,
                feedback="\n\n".join(
                    [
                        f"Validation failed at iteration {iteration}, stage: {spec.stage}",
                        f"Command: {spec.command}",
                        f"Exit code: {result.exit_code}",
                        f"Classification: {classification}",
                        f"Summary:\n{summary}",
                        f"Output:\n{_output_tail(result.output)}",
                    ]
                ),
            )

        summary = "\n".join(f"{step.stage}: {step.summary}" for step in steps)
        return ValidationOutcome(
            passed=True,
            summary=summary or "Validation pipeline passed.",
            steps=steps,
        )
