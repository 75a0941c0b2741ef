from __future__ import annotations

from typing import Literal

from orchestra.models import Phase

PhaseErrorType = Literal["phase_result_failed", "runtime_error", "unhandled_error"]


class OrchestraError(RuntimeError):
    """Base error for orchestration failures."""


class OrchestraStateError(OrchestraError):
    """Raised when a session store operation violates session invariants."""


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the store."""


class PatchError(OrchestraError):
    """Raised when a unified diff cannot be parsed or its hunks cannot be located."""

    def __init__(self, message: str, *, hunk_index: int | None = None) -> None:
        super().__init__(message)
        self.hunk_index = hunk_index


class WorkspacePathError(OrchestraError):
    """Raised when a path resolves outside the workspace root."""


class CommandTimeoutError(OrchestraError):
    """Raised when an external command exceeds its timeout and is killed."""

    def __init__(self, message: str, *, command: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.command = command
        self.timeout_seconds = timeout_seconds


class SpecialistOutputError(OrchestraError):
    """Raised when an agent reply does not contain a usable JSON object."""

    def __init__(self, message: str, *, role: str) -> None:
        super().__init__(message)
        self.role = role


class PhaseExecutionFailure(OrchestraError):
    """Raised when a phase aborts the session run."""

    def __init__(
        self,
        message: str,
        *,
        phase: Phase,
        iteration: int | None = None,
        artifact_id: str | None = None,
        error_type: PhaseErrorType = "runtime_error",
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.iteration = iteration
        self.artifact_id = artifact_id
        self.error_type = error_type
