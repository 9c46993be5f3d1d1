"""Tests for notification fan-out, relay and relay auth."""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.protocol import State

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))

from callbridge.websocket.auth import RelayAuth
from callbridge.websocket.events import CallNotification
from callbridge.websocket.fanout import NotificationFanout
from callbridge.websocket.relay import NotificationRelay


class TestCallNotification:
    """Test CallNotification envelope."""

    def test_to_dict_merges_data(self):
        notification = CallNotification(
            type="incoming-call",
            call_id=5,
            timestamp="2024-05-01T09:30:00Z",
            data={"caller_number": "5551234"},
            target_user_id=17,
        )
        result = notification.to_dict()

        assert result == {
            "type": "incoming-call",
            "call_id": 5,
            "timestamp": "2024-05-01T09:30:00Z",
            "caller_number": "5551234",
        }

    def test_default_timestamp(self):
        assert CallNotification(type="call-ended").timestamp.endswith("Z")


class TestNotificationFanout:
    """Test hub + relay fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_hub_and_relay(self):
        hub = MagicMock()
        hub.publish = AsyncMock(return_value=2)
        relay = MagicMock()
        metrics = MagicMock()

        fanout = NotificationFanout(hub=hub, relay=relay, metrics=metrics)
        notification = await fanout.publish("call-ended", 9, {"duration": 30})

        hub.publish.assert_awaited_once_with(notification)
        relay.send.assert_called_once()
        assert relay.send.call_args[0][0]["duration"] == 30
        metrics.notification_sent.assert_called_once_with("call-ended")
        assert fanout.published_count == 1

    def test_installs_itself_as_hub_publisher(self):
        hub = MagicMock()
        fanout = NotificationFanout(hub=hub)

        assert hub.publisher == fanout.publish_notification

    @pytest.mark.asyncio
    async def test_hub_failure_does_not_block_relay(self):
        hub = MagicMock()
        hub.publish = AsyncMock(side_effect=RuntimeError("socket gone"))
        relay = MagicMock()

        fanout = NotificationFanout(hub=hub, relay=relay)
        await fanout.publish("incoming-call", 1, {}, target_user_id=17)

        relay.send.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_sinks(self):
        fanout = NotificationFanout()
        notification = await fanout.publish("call-answered", 3, {})

        assert notification.call_id == 3


class TestNotificationRelay:
    """Test NotificationRelay class."""

    def test_init_filters_comments(self):
        relay = NotificationRelay(urls=["ws://valid", "# ws://commented", ""])
        assert relay.urls == ["ws://valid"]

    def test_send_without_urls_is_noop(self):
        relay = NotificationRelay(urls=[])
        relay.send({"type": "x"})
        assert relay.get_stats()["queue_size"] == 0

    def test_queue_drops_oldest(self):
        relay = NotificationRelay(urls=["ws://crm"], queue_maxsize=2)

        for i in range(3):
            relay.send({"n": i})

        assert relay.dropped_count == 1
        assert relay._queue.get_nowait() == {"n": 1}
        assert relay._queue.get_nowait() == {"n": 2}

    @pytest.mark.asyncio
    async def test_deliver_to_open_connection(self):
        relay = NotificationRelay(urls=["ws://crm"])
        ws = MagicMock()
        ws.state = State.OPEN
        ws.send = AsyncMock()
        relay._connections["ws://crm"] = ws

        await relay._deliver({"type": "call-ended", "call_id": 1})

        ws.send.assert_awaited_once()
        assert '"call-ended"' in ws.send.call_args[0][0]
        assert relay.sent_count == 1
        assert relay.connected_count == 1

    @pytest.mark.asyncio
    async def test_failed_send_schedules_reconnect(self):
        relay = NotificationRelay(urls=["ws://crm"])
        ws = MagicMock()
        ws.state = State.OPEN
        ws.send = AsyncMock(side_effect=ConnectionError("reset"))
        relay._connections["ws://crm"] = ws

        with patch.object(relay, "_schedule_reconnect") as reconnect:
            await relay._deliver({"type": "x"})

        reconnect.assert_called_once_with("ws://crm")
        assert "ws://crm" not in relay._connections

    @pytest.mark.asyncio
    async def test_open_passes_auth_headers(self):
        auth = RelayAuth("secret", "callbridge")
        relay = NotificationRelay(urls=["ws://crm"], auth=auth)

        with patch("callbridge.websocket.relay.websockets.connect", new=AsyncMock(return_value=MagicMock())) as connect:
            assert await relay._open("ws://crm") is True

        headers = connect.call_args.kwargs["additional_headers"]
        assert headers["Authorization"].startswith("Bearer ")

    @pytest.mark.asyncio
    async def test_open_failure_returns_false(self):
        relay = NotificationRelay(urls=["ws://crm"])

        with patch("callbridge.websocket.relay.websockets.connect", new=AsyncMock(side_effect=OSError("refused"))):
            assert await relay._open("ws://crm") is False

    @pytest.mark.asyncio
    async def test_start_stop_without_urls(self):
        relay = NotificationRelay(urls=[])
        await relay.start()
        await relay.stop()
        assert relay.get_stats()["connected"] == 0


class TestRelayAuth:
    """Test JWT relay tokens."""

    def test_token_round_trip(self):
        auth = RelayAuth("secret", "callbridge")
        claims = auth.verify(auth.issue_token())

        assert claims["client_id"] == "callbridge"
        assert claims["permissions"] == ["publish_call_events"]

    def test_token_cached(self):
        auth = RelayAuth("secret", "callbridge")
        assert auth.current_token() == auth.current_token()

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            RelayAuth("", "callbridge")
