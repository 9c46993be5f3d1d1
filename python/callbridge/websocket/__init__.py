"""Real-time notification delivery to CRM clients."""
from .auth import RelayAuth
from .events import CallNotification
from .fanout import NotificationFanout
from .hub import SubscriberHub
from .relay import NotificationRelay

__all__ = ["RelayAuth", "CallNotification", "NotificationFanout", "SubscriberHub", "NotificationRelay"]
