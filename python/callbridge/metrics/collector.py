"""
Prometheus Metrics Collector for the call bridge.

Provides metrics for monitoring:
- Calls by final status and call duration
- Live call sessions
- Notifications published and events dropped
- Recording lookups, manager reconnects and store errors
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger("callbridge.metrics")


# Call metrics
CALLS_TOTAL = Counter(
    'callbridge_calls_total',
    'Call records written, by status',
    ['status']  # 'incoming', 'completed', 'missed', 'cancelled'
)
CALL_DURATION = Histogram(
    'callbridge_call_duration_seconds',
    'Duration of answered calls in seconds',
    buckets=[10, 30, 60, 120, 300, 600, 1800, 3600]
)
ACTIVE_SESSIONS = Gauge(
    'callbridge_active_sessions',
    'Channel sessions currently tracked'
)

# Event stream metrics
NOTIFICATIONS_TOTAL = Counter(
    'callbridge_notifications_total',
    'Notifications published',
    ['type']
)
DROPPED_EVENTS_TOTAL = Counter(
    'callbridge_dropped_events_total',
    'Events dropped by the correlation engine',
    ['reason']
)
AMI_RECONNECTS_TOTAL = Counter(
    'callbridge_ami_reconnects_total',
    'Manager interface reconnections'
)

# Follow-up metrics
RECORDING_FETCH_TOTAL = Counter(
    'callbridge_recording_fetch_total',
    'Recording metadata lookups',
    ['result']  # 'available', 'unavailable', 'error'
)
PERSISTENCE_ERRORS_TOTAL = Counter(
    'callbridge_persistence_errors_total',
    'Store operations that failed'
)

# Subscriber metrics
SUBSCRIBERS = Gauge(
    'callbridge_subscribers',
    'Connected CRM subscribers'
)


class MetricsCollector:
    """
    Centralized metrics collector for the call bridge.

    Provides convenient methods for recording metrics
    and starts the Prometheus HTTP server.
    """

    def __init__(self, port: int = 9090, host: str = "0.0.0.0"):
        """
        Initialize metrics collector.

        Args:
            port: Port for Prometheus HTTP server
            host: Host to bind to
        """
        self.port = port
        self.host = host
        self._started = False

    def start(self) -> bool:
        """
        Start the Prometheus HTTP server.

        Returns:
            True if started (or already running), False on bind failure
        """
        if self._started:
            return True

        try:
            start_http_server(self.port, addr=self.host)
            self._started = True
            logger.info(f"Prometheus metrics server started on {self.host}:{self.port}")
            return True
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            return False

    # Calls
    def call_recorded(self, status: str) -> None:
        CALLS_TOTAL.labels(status=status).inc()

    def call_finished(self, status: str, duration: Optional[float] = None) -> None:
        """Record a call reaching a terminal status."""
        CALLS_TOTAL.labels(status=status).inc()
        if duration is not None:
            CALL_DURATION.observe(duration)

    def active_sessions(self, count: int) -> None:
        ACTIVE_SESSIONS.set(count)

    # Event stream
    def notification_sent(self, notification_type: str) -> None:
        NOTIFICATIONS_TOTAL.labels(type=notification_type).inc()

    def event_dropped(self, reason: str) -> None:
        DROPPED_EVENTS_TOTAL.labels(reason=reason).inc()

    def ami_reconnected(self) -> None:
        AMI_RECONNECTS_TOTAL.inc()

    # Follow-ups
    def recording_fetched(self, result: str) -> None:
        RECORDING_FETCH_TOTAL.labels(result=result).inc()

    def persistence_error(self) -> None:
        PERSISTENCE_ERRORS_TOTAL.inc()

    def subscriber_change(self, delta: int) -> None:
        """Record subscriber connection change (+1 or -1)."""
        SUBSCRIBERS.inc(delta)


# Global instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get or create the global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
