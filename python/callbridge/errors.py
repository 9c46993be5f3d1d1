"""
Exception hierarchy for the call bridge.

Each exception carries a short ``code`` used in log lines and in error
replies sent to CRM subscribers.
"""

from typing import Optional


class CallBridgeError(Exception):
    """Base exception for all call bridge errors."""

    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(CallBridgeError):
    """Manager interface connection or login failure."""
    code = "TRANSPORT_ERROR"


class CorrelationError(CallBridgeError):
    """Event could not be attributed to a live call session."""
    code = "CORRELATION_ERROR"


class PersistenceError(CallBridgeError):
    """Query against the relational store failed."""
    code = "PERSISTENCE_ERROR"


class RecordingFetchError(CallBridgeError):
    """Recording metadata could not be requested."""
    code = "RECORDING_FETCH_ERROR"
