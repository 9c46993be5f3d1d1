"""Core call-correlation components."""
from .outcome import CallStatus, RecordingStatus, classify_hangup
from .call_session import CallSession, CallSessionRegistry, SessionState
from .task_registry import TaskRegistry
from .transitions import CallEvent, EventKind, Transition, transition
from .recording import RecordingFetcher, RecordingResult
from .engine import CallCorrelationEngine

__all__ = [
    "CallStatus",
    "RecordingStatus",
    "classify_hangup",
    "CallSession",
    "CallSessionRegistry",
    "SessionState",
    "TaskRegistry",
    "CallEvent",
    "EventKind",
    "Transition",
    "transition",
    "RecordingFetcher",
    "RecordingResult",
    "CallCorrelationEngine",
]
