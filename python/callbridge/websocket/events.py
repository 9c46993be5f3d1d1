"""Notification envelope shared by the hub and the relay."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

# Call lifecycle notifications
INCOMING_CALL = "incoming-call"
CALL_ANSWERED = "call-answered"
MISSED_CALL_CREATED = "missed-call-created"
CALL_ENDED = "call-ended"

# Hub replies to CRM requests
AUTHENTICATED = "authenticated"
AUTH_ERROR = "auth_error"
ACTIVE_CALLS = "active-calls"
OUTGOING_CALL_INITIATED = "outgoing-call-initiated"
ERROR = "error"


def _utc_timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


@dataclass
class CallNotification:
    """
    Event delivered to CRM subscribers.

    ``target_user_id`` asks the hub to deliver only to that user's
    connections; it is routing information and is not serialized.
    """
    type: str
    call_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_timestamp)
    target_user_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type,
            "call_id": self.call_id,
            "timestamp": self.timestamp,
        }
        result.update(self.data)
        return result
