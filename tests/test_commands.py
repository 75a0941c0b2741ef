import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from orchestra.commands import CommandRunner
from orchestra.errors import CommandTimeoutError

PYTHON = shlex.quote(sys.executable)


def _python(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


def test_runner_captures_output_and_exit_code(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path)

    ok = asyncio.run(runner.run(_python("print('hello')")))
    failed = asyncio.run(runner.run(_python("import sys; sys.exit(3)")))

    assert ok.exit_code == 0
    assert ok.output == "hello"
    assert ok.used_shell is False
    assert failed.exit_code == 3


def test_runner_combines_stderr_into_output(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path)

    result = asyncio.run(
        runner.run(_python("import sys; print('out'); print('err', file=sys.stderr)"))
    )

    assert "out" in result.output
    assert "err" in result.output


def test_runner_uses_shell_for_operators(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path)

    result = asyncio.run(runner.run("echo hello | tr a-z A-Z"))

    assert result.used_shell is True
    assert result.output == "HELLO"


def test_runner_runs_in_working_directory(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("here", encoding="utf-8")
    runner = CommandRunner(tmp_path)

    result = asyncio.run(runner.run(_python("print(open('marker.txt').read())")))

    assert result.output == "here"


def test_runner_keeps_output_tail(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path, max_output_chars=10)

    result = asyncio.run(runner.run(_python("print('a' * 50 + 'END')")))

    assert len(result.output) == 10
    assert result.output.endswith("END")


def test_runner_kills_command_on_timeout(tmp_path: Path) -> None:
    runner = CommandRunner(tmp_path, timeout_seconds=0.5)

    with pytest.raises(CommandTimeoutError) as excinfo:
        asyncio.run(runner.run(_python("import time; time.sleep(10)")))

    assert excinfo.value.timeout_seconds == 0.5


def test_runner_rejects_empty_command(tmp_path: Path) -> None:
    result = asyncio.run(CommandRunner(tmp_path).run("   "))

    assert result.exit_code == 1
    assert "empty" in result.output.lower()


def test_runner_missing_executable_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        asyncio.run(CommandRunner(tmp_path).run("orchestra-no-such-binary --version"))
