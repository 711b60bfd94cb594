from magnus.state.models import Checkpoint, ErrorEvent, PhaseRecord, Session
from magnus.state.store import SessionCorruption, SessionNotFound, SessionStore, StateError

__all__ = [
    "Checkpoint",
    "ErrorEvent",
    "PhaseRecord",
    "Session",
    "SessionCorruption",
    "SessionNotFound",
    "SessionStore",
    "StateError",
]
