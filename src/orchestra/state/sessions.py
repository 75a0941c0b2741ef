from __future__ import annotations

import asyncio
import copy
import logging
import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from orchestra.errors import OrchestraStateError, SessionNotFoundError
from orchestra.models import (
    LOOP_PHASES,
    AgentRole,
    BudgetSnapshot,
    FailureClassification,
    Phase,
    PhaseStatus,
    SessionEvent,
    SessionInput,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)

EventChannel = asyncio.Queue[SessionEvent | None]

_FORWARD_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.RUNNING, PhaseStatus.SKIPPED}),
    PhaseStatus.RUNNING: frozenset(
        {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED}
    ),
    PhaseStatus.COMPLETED: frozenset(),
    PhaseStatus.FAILED: frozenset(),
    PhaseStatus.SKIPPED: frozenset(),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class SessionStore:
    """Owns session records, their append-only event logs and subscriber channels."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, SessionState] = {}
        self._events: dict[str, list[SessionEvent]] = {}
        self._subscribers: dict[str, list[EventChannel]] = {}

    def _require(self, session_id: str) -> SessionState:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def create(
        self,
        session_input: SessionInput,
        phases: list[Phase],
        budget: BudgetSnapshot | None = None,
        *,
        session_id: str | None = None,
    ) -> SessionState:
        session = SessionState(
            id=session_id or uuid4().hex,
            input=session_input,
            phase_statuses={phase: PhaseStatus.PENDING for phase in phases},
            budget=budget,
        )
        with self._lock:
            if session.id in self._sessions:
                raise OrchestraStateError(f"Session {session.id} already exists.")
            self._sessions[session.id] = session
            self._events[session.id] = []
            self._subscribers[session.id] = []
        return copy.deepcopy(session)

    def get(self, session_id: str) -> SessionState:
        with self._lock:
            return copy.deepcopy(self._require(session_id))

    def find(self, session_id: str) -> SessionState | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session is not None else None

    def list(self) -> list[SessionState]:
        with self._lock:
            sessions = [copy.deepcopy(item) for item in self._sessions.values()]
        return sorted(sessions, key=lambda item: item.started_at, reverse=True)

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        final_summary: str | None = None,
    ) -> None:
        closing: list[EventChannel] = []
        with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                logger.debug(
                    "ignoring status %s for finished session %s", status, session_id
                )
                return
            session.status = status
            if status.is_terminal:
                session.ended_at = _utcnow_iso()
                session.final_summary = final_summary
                closing = self._subscribers.get(session_id, [])
                self._subscribers[session_id] = []
        for channel in closing:
            channel.put_nowait(None)

    def set_iteration(self, session_id: str, iteration: int) -> None:
        with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                return
            if iteration < session.iteration:
                raise OrchestraStateError(
                    f"Iteration cannot move backwards ({session.iteration} -> {iteration})."
                )
            session.iteration = iteration

    def set_current_phase(self, session_id: str, phase: Phase | None) -> None:
        with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                return
            session.current_phase = phase

    def set_phase_status(self, session_id: str, phase: Phase, status: PhaseStatus) -> None:
        with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                return
            current = session.phase_statuses.get(phase)
            if current is None:
                raise OrchestraStateError(f"Phase {phase} is not configured for this session.")
            if current == status:
                return
            allowed = status in _FORWARD_TRANSITIONS[current]
            # Loop phases run again on every iteration.
            rearmed = (
                phase in LOOP_PHASES
                and status == PhaseStatus.RUNNING
                and current in {PhaseStatus.COMPLETED, PhaseStatus.FAILED}
            )
            if not (allowed or rearmed):
                raise OrchestraStateError(
                    f"Illegal phase transition for {phase}: {current} -> {status}"
                )
            session.phase_statuses[phase] = status

    def set_artifact_ref(self, session_id: str, phase: Phase, artifact_id: str) -> None:
        with self._lock:
            self._require(session_id).artifact_refs[phase] = artifact_id

    def update_budget(self, session_id: str, budget: BudgetSnapshot) -> None:
        with self._lock:
            self._require(session_id).budget = budget

    def push_event(
        self,
        session_id: str,
        role: AgentRole,
        event_type: str,
        message: str,
        *,
        phase: Phase | None = None,
        iteration: int | None = None,
        artifact_id: str | None = None,
        classification: FailureClassification | None = None,
        data: dict[str, Any] | None = None,
    ) -> SessionEvent:
        event = SessionEvent(
            session_id=session_id,
            role=role,
            type=event_type,
            message=message,
            phase=phase,
            iteration=iteration,
            artifact_id=artifact_id,
            classification=classification,
            data=dict(data or {}),
        )
        with self._lock:
            self._require(session_id)
            self._events[session_id].append(event)
            channels = list(self._subscribers[session_id])
        for channel in channels:
            channel.put_nowait(event)
        return event

    def get_events(self, session_id: str, *, after: int = 0) -> list[SessionEvent]:
        with self._lock:
            self._require(session_id)
            return list(self._events[session_id][after:])

    def subscribe(self, session_id: str) -> EventChannel:
        channel: EventChannel = asyncio.Queue()
        with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                channel.put_nowait(None)
                return channel
            self._subscribers[session_id].append(channel)
        return channel

    def unsubscribe(self, session_id: str, channel: EventChannel) -> None:
        with self._lock:
            channels = self._subscribers.get(session_id, [])
            if channel in channels:
                channels.remove(channel)
