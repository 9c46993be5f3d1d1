"""
Notification relay.

Forwards every call notification to external WebSocket endpoints (for
example a separate CRM socket server) over one long-lived connection per
URL:
- Bounded queue, oldest notification dropped when full
- Automatic reconnection per URL
- Optional JWT bearer authentication
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import websockets
from websockets.protocol import State

if TYPE_CHECKING:
    from .auth import RelayAuth

logger = logging.getLogger("callbridge.relay")


class NotificationRelay:
    """Fan notifications out to a fixed set of remote WebSocket URLs."""

    def __init__(
        self,
        urls: List[str],
        queue_maxsize: int = 1000,
        reconnect_interval: float = 5.0,
        ping_interval: float = 20.0,
        ping_timeout: float = 10.0,
        auth: Optional["RelayAuth"] = None,
    ):
        """
        Initialize the relay.

        Args:
            urls: Remote WebSocket URLs (blank and '#'-prefixed entries ignored)
            queue_maxsize: Pending notifications kept while targets are slow
            reconnect_interval: Seconds between reconnection attempts
            ping_interval: Keepalive ping interval
            ping_timeout: Keepalive ping timeout
            auth: Optional RelayAuth for bearer headers
        """
        self.urls = [u for u in urls if u and not u.strip().startswith("#")]
        self.queue_maxsize = queue_maxsize
        self.reconnect_interval = reconnect_interval
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.auth = auth

        self._connections: Dict[str, Any] = {}
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_maxsize)
        self._running = False
        self._dropped_count = 0
        self._sent_count = 0
        self._send_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}

    @staticmethod
    def _is_open(ws: Any) -> bool:
        return getattr(ws, "state", None) == State.OPEN

    @property
    def connected_count(self) -> int:
        return len([ws for ws in self._connections.values() if self._is_open(ws)])

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    @property
    def sent_count(self) -> int:
        return self._sent_count

    async def _open(self, url: str) -> bool:
        """Open one relay connection. Returns True on success."""
        kwargs: Dict[str, Any] = {
            "ping_interval": self.ping_interval,
            "ping_timeout": self.ping_timeout,
        }
        if self.auth:
            kwargs["additional_headers"] = self.auth.headers()

        try:
            logger.info(f"Relay connecting: {url}")
            ws = await websockets.connect(url, **kwargs)
        except Exception as e:
            logger.warning(f"Relay connection failed: {url} - {e}")
            return False

        self._connections[url] = ws
        logger.info(f"Relay connected: {url}")
        return True

    async def _reconnect_loop(self, url: str) -> None:
        while self._running and url not in self._connections:
            await asyncio.sleep(self.reconnect_interval)
            if await self._open(url):
                break

    def _schedule_reconnect(self, url: str) -> None:
        task = self._reconnect_tasks.get(url)
        if task is None or task.done():
            self._reconnect_tasks[url] = asyncio.create_task(self._reconnect_loop(url))

    def send(self, payload: Dict[str, Any]) -> None:
        """Queue a serialized notification, evicting the oldest when full."""
        if not self.urls:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._dropped_count += 1
            if self._dropped_count % 100 == 1:
                logger.warning(f"Relay queue full, dropped {self._dropped_count} notifications")
            self._queue.put_nowait(payload)

    async def _deliver(self, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload, ensure_ascii=False, default=str)

        dead_urls = []
        for url, ws in list(self._connections.items()):
            if not self._is_open(ws):
                dead_urls.append(url)
                continue
            try:
                await ws.send(data)
                self._sent_count += 1
            except Exception as e:
                logger.error(f"Relay send error ({url}): {e}")
                dead_urls.append(url)

        for url in dead_urls:
            self._connections.pop(url, None)
            self._schedule_reconnect(url)

    async def _send_loop(self) -> None:
        while self._running:
            try:
                payload = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._deliver(payload)
            except Exception as e:
                logger.error(f"Relay send loop error: {e}")

    async def start(self) -> None:
        if not self.urls:
            logger.info("No relay URLs configured, relay disabled")
            return

        self._running = True
        self._send_task = asyncio.create_task(self._send_loop())
        for url in self.urls:
            if not await self._open(url):
                self._schedule_reconnect(url)

    async def stop(self) -> None:
        self._running = False

        for task in self._reconnect_tasks.values():
            task.cancel()
        self._reconnect_tasks.clear()

        if self._send_task:
            self._send_task.cancel()
            try:
                await self._send_task
            except asyncio.CancelledError:
                pass
            self._send_task = None

        for url, ws in list(self._connections.items()):
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Relay close error ({url}): {e}")
        self._connections.clear()

        logger.info(f"Relay stopped. Sent: {self._sent_count}, Dropped: {self._dropped_count}")

    def get_stats(self) -> dict:
        return {
            "connected": self.connected_count,
            "total_urls": len(self.urls),
            "queue_size": self._queue.qsize(),
            "queue_maxsize": self.queue_maxsize,
            "sent_count": self._sent_count,
            "dropped_count": self._dropped_count,
        }
