"""
Call Bridge - PBX call events to CRM call records and notifications.

Listens to the Asterisk Manager Interface event stream and:
- Correlates events into one session per channel
- Writes incoming, answered, missed and completed calls to the CRM store
- Fetches recording paths after hangup
- Pushes real-time notifications to CRM WebSocket clients

Usage:
    python -m callbridge

Environment Variables:
    CALLBRIDGE_AMI_HOST / CALLBRIDGE_AMI_PORT - Manager interface address
    CALLBRIDGE_AMI_USERNAME / CALLBRIDGE_AMI_SECRET - Manager login
    CALLBRIDGE_DATABASE_URL - CRM store DSN
    CALLBRIDGE_HUB_PORT - CRM WebSocket port (default: 3771)
"""

__version__ = "1.0.0"

from .config import BridgeConfig, get_config
from .core.bridge import CallBridge

__all__ = [
    "BridgeConfig",
    "get_config",
    "CallBridge",
]
