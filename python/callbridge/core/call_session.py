"""Call session state and the per-channel session registry."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .task_registry import TaskRegistry

logger = logging.getLogger("callbridge.registry")


def utcnow() -> datetime:
    return datetime.utcnow()


class SessionState(str, Enum):
    """Lifecycle of one channel as seen by the correlation engine."""

    NEW = "new"
    NUMBERS_KNOWN = "numbers_known"
    INCOMING_RECORDED = "incoming_recorded"
    ANSWERED = "answered"
    ENDED = "ended"


@dataclass
class CallSession:
    """In-flight call observed on one PBX channel."""
    channel_id: str
    unique_id: Optional[str] = None
    caller_number: Optional[str] = None
    receiver_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    state: SessionState = SessionState.NEW
    call_record_id: Optional[int] = None
    # Set once the incoming transition fired, whether or not the insert succeeded
    processed: bool = False
    assigned_user_id: Optional[int] = None
    answered_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def has_numbers(self) -> bool:
        return bool(self.caller_number and self.receiver_number)

    @property
    def is_self_loop(self) -> bool:
        return self.has_numbers and self.caller_number == self.receiver_number

    @property
    def is_ended(self) -> bool:
        return self.state == SessionState.ENDED

    def apply(self, updates: Dict[str, object]) -> None:
        """Write transition updates onto the session."""
        for name, value in updates.items():
            if not hasattr(self, name):
                raise AttributeError(f"CallSession has no field '{name}'")
            setattr(self, name, value)


class CallSessionRegistry:
    """
    Map of channel identifier to its live call session.

    Features:
    - At most one session per channel
    - Lookup by Uniqueid across all sessions
    - Most-recently-created fallback for events that omit the channel
    - Delayed eviction after call end, tracked in a TaskRegistry
    """

    def __init__(self, tasks: Optional["TaskRegistry"] = None):
        self._sessions: Dict[str, CallSession] = {}
        self._tasks = tasks

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._sessions

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._sessions.values()))

    def get(self, channel_id: str) -> Optional[CallSession]:
        return self._sessions.get(channel_id)

    def get_or_create(
        self,
        channel_id: str,
        unique_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Tuple[CallSession, bool]:
        """
        Return the channel's session, creating it when absent.

        Returns:
            (session, created)
        """
        session = self._sessions.get(channel_id)
        if session is not None:
            return session, False

        session = CallSession(
            channel_id=channel_id,
            unique_id=unique_id,
            created_at=created_at or utcnow(),
        )
        self._sessions[channel_id] = session
        logger.debug(f"Session created: {channel_id} (uniqueid={unique_id})")
        return session, True

    def replace(self, session: CallSession) -> None:
        """Install a fresh session for a reused channel."""
        self._cancel_eviction(session.channel_id)
        self._sessions.pop(session.channel_id, None)
        self._sessions[session.channel_id] = session
        logger.debug(f"Session replaced: {session.channel_id} (uniqueid={session.unique_id})")

    def remove(self, channel_id: str) -> Optional[CallSession]:
        session = self._sessions.pop(channel_id, None)
        if session is not None:
            logger.debug(f"Session removed: {channel_id}")
        return session

    def find_by_unique_id(self, unique_id: str) -> Optional[CallSession]:
        for session in self._sessions.values():
            if session.unique_id == unique_id:
                return session
        return None

    def most_recent(self) -> Optional[CallSession]:
        """Most recently inserted session, or None when empty."""
        if not self._sessions:
            return None
        return next(reversed(self._sessions.values()))

    def schedule_eviction(self, session: CallSession, delay: float) -> Optional[asyncio.Task]:
        """
        Remove ``session`` after ``delay`` seconds.

        The timer only removes the exact session it was scheduled for, so a
        channel reused in the meantime keeps its new session.
        """
        if self._tasks is None:
            self.remove(session.channel_id)
            return None

        async def _evict():
            await asyncio.sleep(delay)
            if self._sessions.get(session.channel_id) is session:
                self.remove(session.channel_id)

        return self._tasks.register(self._eviction_name(session.channel_id), _evict())

    def _cancel_eviction(self, channel_id: str) -> None:
        if self._tasks is not None:
            self._tasks.cancel_nowait(self._eviction_name(channel_id))

    @staticmethod
    def _eviction_name(channel_id: str) -> str:
        return f"evict:{channel_id}"
