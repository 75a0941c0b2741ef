from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from orchestra.errors import CommandTimeoutError

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?]|[$]\(|[$]\{|~)")


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    output: str
    duration_ms: int
    used_shell: bool = False


def _tail(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[-max_chars:]


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class CommandRunner:
    """Runs shell commands inside a working directory with a hard timeout."""

    def __init__(
        self,
        cwd: Path,
        *,
        timeout_seconds: float = 15.0,
        max_output_chars: int = 12000,
    ) -> None:
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.max_output_chars = max_output_chars

    async def _spawn(self, command_text: str) -> tuple[asyncio.subprocess.Process, bool]:
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not used_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                used_shell = True

        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        return process, used_shell

    async def run(self, command: str, *, timeout_seconds: float | None = None) -> CommandResult:
        command_text = command.strip()
        if not command_text:
            return CommandResult(
                command=command,
                exit_code=1,
                output="Command is empty.",
                duration_ms=0,
            )

        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        started = time.monotonic()
        process, used_shell = await self._spawn(command_text)
        logger.debug("running %r (shell=%s, pid=%s)", command_text, used_shell, process.pid)
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as exc:
            _kill_process_group(process)
            await process.wait()
            logger.warning("command %r killed after %.1fs", command_text, timeout)
            raise CommandTimeoutError(
                f"Command timed out after {timeout:.1f}s: {command_text}",
                command=command_text,
                timeout_seconds=timeout,
            ) from exc
        except asyncio.CancelledError:
            _kill_process_group(process)
            raise

        output = (stdout or b"").decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            command=command,
            exit_code=exit_code,
            output=_tail(output.strip(), self.max_output_chars),
            duration_ms=int((time.monotonic() - started) * 1000),
            used_shell=used_shell,
        )
