from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from orchestra.models import BudgetSnapshot, ExhaustedReason


@dataclass(slots=True)
class BudgetGate:
    ok: bool
    reason: ExhaustedReason
    snapshot: BudgetSnapshot


class BudgetTracker:
    """Gates loop iterations against an iteration cap and a wall-clock deadline.

    The iteration cap is checked before the deadline, so a check that exceeds both
    reports ``"iterations"``.
    """

    def __init__(
        self,
        max_iterations: int,
        max_minutes: int,
        started_at: datetime | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if max_minutes < 1:
            raise ValueError("max_minutes must be at least 1")
        self.max_iterations = max_iterations
        self.max_minutes = max_minutes
        self.started_at = started_at or datetime.now(UTC)
        self.deadline_at = self.started_at + timedelta(minutes=max_minutes)

    def _elapsed_ms(self, now: datetime) -> int:
        delta = now - self.started_at
        return max(0, int(delta.total_seconds() * 1000))

    def snapshot(
        self,
        iteration: int,
        now: datetime | None = None,
        *,
        exhausted_reason: ExhaustedReason = "none",
    ) -> BudgetSnapshot:
        current = now or datetime.now(UTC)
        remaining = 0
        if exhausted_reason == "none":
            remaining = max(0, self.max_iterations - iteration + 1)
        return BudgetSnapshot(
            max_iterations=self.max_iterations,
            remaining_iterations=remaining,
            max_minutes=self.max_minutes,
            started_at=self.started_at.isoformat(timespec="milliseconds"),
            deadline_at=self.deadline_at.isoformat(timespec="milliseconds"),
            elapsed_ms=self._elapsed_ms(current),
            exhausted_reason=exhausted_reason,
        )

    def can_start_iteration(self, iteration: int, now: datetime | None = None) -> BudgetGate:
        current = now or datetime.now(UTC)
        if iteration > self.max_iterations:
            reason: ExhaustedReason = "iterations"
        elif current >= self.deadline_at:
            reason = "minutes"
        else:
            reason = "none"
        return BudgetGate(
            ok=reason == "none",
            reason=reason,
            snapshot=self.snapshot(iteration, current, exhausted_reason=reason),
        )
