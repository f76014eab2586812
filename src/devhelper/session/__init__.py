"""Context store, session state and the session controller."""
from .controller import NO_ANSWER, REPLY_FAILED, SessionController
from .state import EngineHandle, Mode, Readiness, Session, SessionStatus
from .store import ContextStore, Entry, EntryKind

__all__ = [
    "NO_ANSWER",
    "REPLY_FAILED",
    "ContextStore",
    "EngineHandle",
    "Entry",
    "EntryKind",
    "Mode",
    "Readiness",
    "Session",
    "SessionController",
    "SessionStatus",
]
