import asyncio
import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from orchestra.backends import (
    AgentBackend,
    BackendExecutionError,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
    StreamingProcessBackend,
)
from orchestra.backends.process import extract_event_text, render_user_prompt


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "o"
        yield "k"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


class ScriptBackend(StreamingProcessBackend):
    name = "script"

    def __init__(self, script: str) -> None:
        super().__init__(sys.executable)
        self.script = script

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        _ = system_prompt, user_prompt, context
        return [self.binary, "-c", self.script]


def _emit_lines(*lines: str) -> str:
    return "\n".join(f"print({line!r})" for line in lines)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"topic": "x", "model": "gpt-5-codex"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {})

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert "--model" not in command


def test_render_user_prompt_hides_private_keys() -> None:
    rendered = render_user_prompt("do it", {"topic": "auth", "_trace": "secret"})

    assert rendered.startswith("do it\n\nContext JSON:")
    assert '"topic": "auth"' in rendered
    assert "secret" not in rendered
    assert render_user_prompt("bare", {}) == "bare"


def test_extract_event_text_shapes() -> None:
    assert extract_event_text({"content": "plain"}) == "plain"
    assert (
        extract_event_text(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}
        )
        == "hi"
    )
    assert extract_event_text({"delta": "d"}) == "d"
    assert extract_event_text({"type": "result", "result": "final"}) == "final"
    assert extract_event_text({"type": "system"}) == ""


def test_streaming_backend_skips_repeated_result_text() -> None:
    assistant = json.dumps(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "hello"}]}}
    )
    result = json.dumps({"type": "result", "result": "hello"})
    backend = ScriptBackend(_emit_lines(assistant, result))

    assert asyncio.run(backend.complete("system", "user")) == "hello"


def test_streaming_backend_passes_plain_text_through() -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptBackend(_emit_lines("not json at all"))
    backend.event_hook = events.append

    assert asyncio.run(backend.complete("system", "user")) == "not json at all"
    names = [event["event"] for event in events]
    assert names == ["process_start", "plain_text_line", "process_exit"]
    assert events[-1]["exit_code"] == 0


def test_streaming_backend_raises_on_non_zero_exit() -> None:
    backend = ScriptBackend("import sys; print('partial'); sys.exit(4)")

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("system", "user"))

    assert excinfo.value.exit_code == 4
    assert excinfo.value.retriable is True


def test_streaming_backend_missing_binary_is_not_retriable() -> None:
    backend = ClaudeCodeBackend(binary="orchestra-missing-claude-binary")

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("system", "user"))

    assert excinfo.value.retriable is False


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        [("primary", primary), ("fallback", SuccessBackend())],
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = asyncio.run(backend.complete("system", "user"))

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_failover_start" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        [("primary", primary), ("fallback", SuccessBackend())],
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert asyncio.run(backend.complete("system", "user")) == "ok"
    assert primary.calls == 1


def test_resilient_backend_raises_when_every_attempt_fails() -> None:
    backend = ResilientBackend(
        [("primary", AlwaysFailBackend()), ("fallback", AlwaysFailBackend())],
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        asyncio.run(backend.complete("system", "user"))


def test_resilient_backend_times_out_slow_backends() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        [("slow", SlowBackend()), ("fallback", SuccessBackend())],
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.1),
        event_hook=events.append,
    )

    assert asyncio.run(backend.complete("system", "user")) == "ok"
    failed = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert "timed out" in failed[0]["error"]


def test_resilient_backend_requires_backends() -> None:
    with pytest.raises(ValueError):
        ResilientBackend([])


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(backoff_seconds=0.5)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]
