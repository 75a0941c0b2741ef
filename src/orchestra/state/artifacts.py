from __future__ import annotations

import threading
from collections import defaultdict

from orchestra.models import (
    SINGLETON_PHASES,
    Artifact,
    Phase,
    ReviewArtifact,
    ValidationArtifact,
)


class ArtifactStore:
    """Keeps phase artifacts per session.

    Planning, architecture, design and packaging hold a single artifact that a
    later save replaces. Loop phases keep their full history in save order.
    History is unbounded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._singletons: dict[str, dict[Phase, Artifact]] = defaultdict(dict)
        self._history: dict[str, dict[Phase, list[Artifact]]] = defaultdict(
            lambda: defaultdict(list)
        )

    def save(self, session_id: str, artifact: Artifact) -> Artifact:
        if artifact.session_id != session_id:
            raise ValueError(
                f"Artifact belongs to session {artifact.session_id}, not {session_id}."
            )
        with self._lock:
            if artifact.phase in SINGLETON_PHASES:
                self._singletons[session_id][artifact.phase] = artifact
                return artifact
            history = self._history[session_id][artifact.phase]
            iteration = getattr(artifact, "iteration", None)
            if history and iteration is not None and iteration <= history[-1].iteration:
                raise ValueError(
                    f"{artifact.phase} artifact for iteration {iteration} saved after "
                    f"iteration {history[-1].iteration}."
                )
            history.append(artifact)
            return artifact

    def get(self, session_id: str, phase: Phase) -> Artifact | None:
        with self._lock:
            if phase in SINGLETON_PHASES:
                return self._singletons.get(session_id, {}).get(phase)
            history = self._history.get(session_id, {}).get(phase, [])
            return history[-1] if history else None

    def get_all(self, session_id: str, phase: Phase) -> list[Artifact]:
        with self._lock:
            if phase in SINGLETON_PHASES:
                artifact = self._singletons.get(session_id, {}).get(phase)
                return [artifact] if artifact is not None else []
            return list(self._history.get(session_id, {}).get(phase, []))

    def get_validation_artifacts(self, session_id: str) -> list[ValidationArtifact]:
        return [
            artifact
            for artifact in self.get_all(session_id, Phase.VALIDATION)
            if isinstance(artifact, ValidationArtifact)
        ]

    def get_review_artifacts(self, session_id: str) -> list[ReviewArtifact]:
        return [
            artifact
            for artifact in self.get_all(session_id, Phase.REVIEW)
            if isinstance(artifact, ReviewArtifact)
        ]

    def get_refs(self, session_id: str) -> dict[Phase, str]:
        refs: dict[Phase, str] = {}
        for phase in Phase:
            artifact = self.get(session_id, phase)
            if artifact is not None:
                refs[phase] = artifact.id
        return refs

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._singletons.pop(session_id, None)
            self._history.pop(session_id, None)
