"""
Call status vocabulary and hangup outcome classification.

The cause-code table below decides missed versus cancelled for calls that
were never answered. Answered calls never reach it.
"""

from enum import Enum
from typing import Optional


class CallStatus(str, Enum):
    """Values of ``calls.status``."""

    INCOMING = "incoming"
    ANSWERED = "answered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"
    OUTGOING = "outgoing"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_answered(self) -> bool:
        return self in ANSWERED_STATUSES


class RecordingStatus(str, Enum):
    """Values of ``calls.recording_status``."""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    ERROR = "error"
    ABSENT = "absent"


TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.MISSED, CallStatus.CANCELLED})
ANSWERED_STATUSES = frozenset({CallStatus.ANSWERED, CallStatus.ACCEPTED, CallStatus.ACTIVE})

# Statuses shown to a CRM user as "on the line or ringing"
LIVE_STATUSES = frozenset({
    CallStatus.INCOMING,
    CallStatus.ACCEPTED,
    CallStatus.ANSWERED,
    CallStatus.ACTIVE,
})

# no answer, normal clearing without answer, no user response,
# call rejected, recovery on timer expire, user busy
MISSED_CAUSES = frozenset({"NO ANSWER", "16", "19", "21", "102", "17"})


def classify_hangup(cause: Optional[str]) -> CallStatus:
    """
    Map a hangup cause code to the terminal status of an unanswered call.

    Args:
        cause: Raw ``Cause:`` value, or None when the hangup carried none

    Returns:
        CallStatus.MISSED or CallStatus.CANCELLED
    """
    if cause is None:
        return CallStatus.MISSED
    code = cause.strip()
    if not code or code in MISSED_CAUSES:
        return CallStatus.MISSED
    return CallStatus.CANCELLED


def parse_status(value: Optional[str]) -> Optional[CallStatus]:
    """Convert a stored status string, tolerating unknown values."""
    if value is None:
        return None
    try:
        return CallStatus(value)
    except ValueError:
        return None
