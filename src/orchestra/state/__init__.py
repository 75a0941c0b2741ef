from orchestra.state.artifacts import ArtifactStore
from orchestra.state.sessions import EventChannel, SessionStore

__all__ = ["ArtifactStore", "EventChannel", "SessionStore"]
