"""
Notification Fan-out.

The single publisher handle the correlation engine emits through. Each
notification goes to the local subscriber hub and, when configured, to the
outbound relay. Delivery is fire-and-forget: failures are logged and never
reach the caller.
"""

import logging
from typing import Any, Dict, Optional, TYPE_CHECKING

from .events import CallNotification

if TYPE_CHECKING:
    from ..metrics import MetricsCollector
    from .hub import SubscriberHub
    from .relay import NotificationRelay

logger = logging.getLogger("callbridge.fanout")


class NotificationFanout:
    """Publish call notifications to every configured sink."""

    def __init__(
        self,
        hub: Optional["SubscriberHub"] = None,
        relay: Optional["NotificationRelay"] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.hub = hub
        self.relay = relay
        self.metrics = metrics
        self._published = 0

        if hub is not None:
            hub.publisher = self.publish_notification

    @property
    def published_count(self) -> int:
        return self._published

    async def publish(
        self,
        event_type: str,
        call_id: Optional[int],
        data: Dict[str, Any],
        target_user_id: Optional[int] = None,
    ) -> CallNotification:
        """Build and deliver one notification."""
        notification = CallNotification(
            type=event_type,
            call_id=call_id,
            data=data,
            target_user_id=target_user_id,
        )
        await self.publish_notification(notification)
        return notification

    async def publish_notification(self, notification: CallNotification) -> int:
        delivered = 0
        if self.hub is not None:
            try:
                delivered = await self.hub.publish(notification)
            except Exception as e:
                logger.error(f"Hub publish of {notification.type} failed: {e}", exc_info=e)

        if self.relay is not None:
            self.relay.send(notification.to_dict())

        self._published += 1
        if self.metrics:
            self.metrics.notification_sent(notification.type)

        logger.info(
            f"Published {notification.type} for call {notification.call_id} "
            f"to {delivered} subscriber(s)"
        )
        return delivered
