"""
CRM subscriber hub.

aiohttp WebSocket endpoint CRM front-ends connect to. The hub owns the
subscriber table: connections are added and removed by the connection
handler and read by ``publish``, all on the same event loop. ``publish``
iterates a snapshot, so a disconnect during a broadcast never mutates the
collection being walked.

Client requests (JSON text frames, ``type`` selects the handler):
    authenticate            {"user_id": 17}
    get-active-calls        {}
    answer-call             {"call_id": 5, "action": "accept"|"reject", "notes": "..."}
    initiate-outgoing-call  {"from_number": "777", "to_number": "+7..."}
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
from uuid import uuid4

from aiohttp import WSMsgType, web

from ..core.outcome import CallStatus
from ..errors import PersistenceError
from . import events
from .events import CallNotification

if TYPE_CHECKING:
    from ..db.gateway import PersistenceGateway
    from ..metrics import MetricsCollector

logger = logging.getLogger("callbridge.hub")

Publisher = Callable[[CallNotification], Awaitable[int]]


@dataclass
class Subscriber:
    id: str
    ws: web.WebSocketResponse
    user_id: Optional[int] = None


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SubscriberHub:
    """WebSocket server delivering call notifications to CRM clients."""

    def __init__(
        self,
        gateway: Optional["PersistenceGateway"] = None,
        host: str = "0.0.0.0",
        port: int = 3771,
        path: str = "/ws",
        heartbeat: float = 30.0,
        send_timeout: float = 5.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.path = path
        self.heartbeat = heartbeat
        self.send_timeout = send_timeout
        self.metrics = metrics

        # Set by the bridge so CRM-originated notifications also reach the relay
        self.publisher: Publisher = self.publish

        self._subscribers: Dict[str, Subscriber] = {}
        self._runner: Optional[web.AppRunner] = None
        self._started = False
        self._handlers = {
            "authenticate": self._on_authenticate,
            "get-active-calls": self._on_get_active_calls,
            "answer-call": self._on_answer_call,
            "initiate-outgoing-call": self._on_outgoing_call,
        }

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_running(self) -> bool:
        return self._started

    def connected_user_ids(self) -> List[int]:
        return sorted({s.user_id for s in self._subscribers.values() if s.user_id is not None})

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.path, self._ws_handler)
        return app

    # Connections ------------------------------------------------------

    async def _ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        subscriber = Subscriber(id=uuid4().hex, ws=ws)
        self._subscribers[subscriber.id] = subscriber
        logger.info(f"Subscriber connected: {subscriber.id} ({self.subscriber_count} total)")
        if self.metrics:
            self.metrics.subscriber_change(1)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_text(subscriber, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Subscriber {subscriber.id} connection error: {ws.exception()}")
        finally:
            self._subscribers.pop(subscriber.id, None)
            if self.metrics:
                self.metrics.subscriber_change(-1)
            logger.info(
                f"Subscriber disconnected: {subscriber.id} (user {subscriber.user_id})"
            )

        return ws

    async def _handle_text(self, subscriber: Subscriber, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self._reply(subscriber, events.ERROR, {"message": "invalid JSON"})
            return
        if not isinstance(message, dict):
            await self._reply(subscriber, events.ERROR, {"message": "expected a JSON object"})
            return

        handler = self._handlers.get(message.get("type"))
        if handler is None:
            await self._reply(subscriber, events.ERROR, {"message": f"unknown request {message.get('type')!r}"})
            return

        try:
            await handler(subscriber, message)
        except PersistenceError as e:
            logger.error(f"Request {message.get('type')} failed: {e}")
            await self._reply(subscriber, events.ERROR, {"message": "request failed", "code": e.code})

    async def _reply(self, subscriber: Subscriber, event_type: str, data: Dict[str, Any]) -> None:
        await self._send(subscriber, CallNotification(type=event_type, data=data).to_dict())

    async def _send(self, subscriber: Subscriber, payload: Dict[str, Any]) -> bool:
        if subscriber.ws.closed:
            return False
        try:
            await asyncio.wait_for(
                subscriber.ws.send_str(json.dumps(payload, ensure_ascii=False, default=str)),
                timeout=self.send_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Subscriber {subscriber.id} too slow, notification dropped")
            return False
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"Dropping notification for subscriber {subscriber.id}: {e}")
            return False

    # Requests ---------------------------------------------------------

    async def _on_authenticate(self, subscriber: Subscriber, message: Dict[str, Any]) -> None:
        user_id = _coerce_int(message.get("user_id"))
        if user_id is None:
            await self._reply(subscriber, events.AUTH_ERROR, {"message": "user_id is required"})
            return

        user = await self.gateway.find_user(user_id) if self.gateway else None
        if user is None:
            logger.warning(f"Authentication failed for unknown user {user_id}")
            await self._reply(subscriber, events.AUTH_ERROR, {"message": "user not found"})
            return

        subscriber.user_id = user.id
        logger.info(f"Subscriber {subscriber.id} authenticated as user {user.id} ({user.full_name})")
        await self._reply(subscriber, events.AUTHENTICATED, {"user_id": user.id})
        await self._on_get_active_calls(subscriber, message)

    async def _on_get_active_calls(self, subscriber: Subscriber, message: Dict[str, Any]) -> None:
        if subscriber.user_id is None:
            await self._reply(subscriber, events.AUTH_ERROR, {"message": "not authenticated"})
            return
        calls = await self.gateway.list_active_calls(subscriber.user_id)
        await self._reply(subscriber, events.ACTIVE_CALLS, {"calls": calls})

    async def _on_answer_call(self, subscriber: Subscriber, message: Dict[str, Any]) -> None:
        call_id = _coerce_int(message.get("call_id"))
        action = message.get("action")
        if subscriber.user_id is None or call_id is None or action not in ("accept", "reject"):
            logger.warning(f"Incomplete answer-call from {subscriber.id}: {message}")
            await self._reply(subscriber, events.ERROR, {"message": "incomplete answer-call request"})
            return

        accepted = action == "accept"
        answered_at = datetime.utcnow()
        applied = await self.gateway.record_crm_answer(
            call_id,
            accepted=accepted,
            user_id=subscriber.user_id,
            answered_at=answered_at,
            notes=message.get("notes"),
        )
        if not applied:
            await self._reply(subscriber, events.ERROR, {"message": f"call {call_id} cannot be answered"})
            return

        status = CallStatus.ACCEPTED if accepted else CallStatus.REJECTED
        logger.info(f"Call {call_id} {status.value} by user {subscriber.user_id}")
        call = await self.gateway.get_call(call_id) or {}
        await self.publisher(CallNotification(
            type=events.CALL_ANSWERED,
            call_id=call_id,
            data={
                "caller_number": call.get("caller_number"),
                "receiver_number": call.get("receiver_number"),
                "timestamp": answered_at.isoformat(),
                "status": status.value,
                "assigned_user_id": call.get("assigned_user_id"),
                "channel_id": call.get("channel_id"),
                "action": action,
                "user_id": subscriber.user_id,
            },
        ))

    async def _on_outgoing_call(self, subscriber: Subscriber, message: Dict[str, Any]) -> None:
        from_number = message.get("from_number")
        to_number = message.get("to_number")
        if subscriber.user_id is None or not from_number or not to_number:
            await self._reply(subscriber, events.ERROR, {"message": "incomplete outgoing call request"})
            return

        now = datetime.utcnow()
        call_id = await self.gateway.insert_call(
            caller_number=from_number,
            receiver_number=to_number,
            status=CallStatus.OUTGOING,
            assigned_user_id=subscriber.user_id,
            accepted_at=now,
        )
        logger.info(f"Outgoing call {call_id} recorded: {from_number} -> {to_number}")
        await self._reply(subscriber, events.OUTGOING_CALL_INITIATED, {
            "call_id": call_id,
            "from_number": from_number,
            "to_number": to_number,
        })

    # Publishing -------------------------------------------------------

    async def publish(self, notification: CallNotification) -> int:
        """
        Deliver a notification; returns the number of connections reached.

        Targeted notifications go to every connection of the target user and
        fall back to a broadcast when that user has none.
        """
        payload = notification.to_dict()
        subscribers = list(self._subscribers.values())

        if notification.target_user_id is not None:
            targeted = [s for s in subscribers if s.user_id == notification.target_user_id]
            if targeted:
                subscribers = targeted
            else:
                logger.info(
                    f"User {notification.target_user_id} not connected, broadcasting {notification.type}"
                )

        results = await asyncio.gather(*(self._send(subscriber, payload) for subscriber in subscribers))
        return sum(1 for sent in results if sent)

    # Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        self._started = True
        logger.info(f"Subscriber hub listening on ws://{self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        for subscriber in list(self._subscribers.values()):
            await subscriber.ws.close()
        self._subscribers.clear()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._started = False
        logger.info("Subscriber hub stopped")
