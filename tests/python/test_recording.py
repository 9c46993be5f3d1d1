"""Tests for the recording metadata fetcher."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))

from callbridge.ami.client import AMIClient
from callbridge.ami.parser import parse_block
from callbridge.core.outcome import RecordingStatus
from callbridge.core.recording import RecordingFetcher, RecordingResult, result_from_reply
from callbridge.errors import RecordingFetchError, TransportError


class ScriptedClient(AMIClient):
    """AMIClient whose writes are answered from a script instead of a socket."""

    def __init__(self, reply=None, fail_send=False):
        super().__init__("127.0.0.1", 5038, "admin", "secret")
        self.reply = reply
        self.fail_send = fail_send
        self.sent = []

    async def send_action(self, action, params=None):
        if self.fail_send:
            raise TransportError(f"Cannot send {action}: not connected")
        self.sent.append((action, params))
        if self.reply is not None:
            text = self.reply(params["ActionID"])
            asyncio.get_running_loop().call_soon(
                asyncio.ensure_future, self.feed(text.encode())
            )


class TestResultFromReply:
    """Test GetVar reply interpretation."""

    def test_value(self):
        block = parse_block("Response: Success\nValue: /rec/a.wav")
        assert result_from_reply(block) == RecordingResult.available("/rec/a.wav")

    def test_empty_value(self):
        block = parse_block("Response: Success\nValue: ")
        assert result_from_reply(block) == RecordingResult.unavailable("empty value")

    def test_error_with_message(self):
        block = parse_block("Response: Error\nMessage: No such channel")
        assert result_from_reply(block) == RecordingResult.unavailable("No such channel")

    def test_error_without_message(self):
        block = parse_block("Response: Error")
        assert result_from_reply(block).reason == "not found"

    def test_unrelated_block(self):
        assert result_from_reply(parse_block("Event: VarSet\nVariable: X")) is None


class TestRecordingFetcher:
    """Test the correlated GetVar exchange."""

    @pytest.mark.asyncio
    async def test_available(self):
        client = ScriptedClient(lambda aid: (
            f"Response: Success\r\nActionID: {aid}\r\nVariable: RECORDED_FILE\r\nValue: /rec/x.wav\r\n\r\n"
        ))
        fetcher = RecordingFetcher(client, timeout=1.0)

        result = await fetcher.fetch("SIP/trunk-01")

        assert result.status == RecordingStatus.AVAILABLE
        assert result.path == "/rec/x.wav"
        action, params = client.sent[0]
        assert action == "GetVar"
        assert params["Channel"] == "SIP/trunk-01"
        assert params["Variable"] == "RECORDED_FILE"
        assert params["ActionID"].startswith("getrecording_")
        assert client.listener_count == 0

    @pytest.mark.asyncio
    async def test_reply_for_other_action_ignored(self):
        """Replies carrying another ActionID never resolve the request."""
        client = ScriptedClient(lambda aid: (
            "Response: Success\r\nActionID: someone-else\r\nValue: /rec/wrong.wav\r\n\r\n"
            f"Response: Error\r\nActionID: {aid}\r\nMessage: Variable not set\r\n\r\n"
        ))
        fetcher = RecordingFetcher(client, timeout=1.0)

        result = await fetcher.fetch("SIP/trunk-01")

        assert result == RecordingResult.unavailable("Variable not set")
        assert client.listener_count == 0

    @pytest.mark.asyncio
    async def test_error_reply(self):
        client = ScriptedClient(lambda aid: (
            f"Response: Error\r\nActionID: {aid}\r\nMessage: No such channel\r\n\r\n"
        ))
        fetcher = RecordingFetcher(client, timeout=1.0)

        result = await fetcher.fetch("SIP/gone-7")

        assert result.status == RecordingStatus.UNAVAILABLE
        assert result.reason == "No such channel"
        assert client.listener_count == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = ScriptedClient()
        fetcher = RecordingFetcher(client, timeout=0.05)

        result = await fetcher.fetch("SIP/trunk-01")

        assert result == RecordingResult.unavailable("timeout")
        assert client.listener_count == 0

    @pytest.mark.asyncio
    async def test_send_failure(self):
        client = ScriptedClient(fail_send=True)
        fetcher = RecordingFetcher(client, timeout=1.0)

        with pytest.raises(RecordingFetchError):
            await fetcher.fetch("SIP/trunk-01")
        assert client.listener_count == 0

    @pytest.mark.asyncio
    async def test_custom_variable(self):
        client = ScriptedClient()
        fetcher = RecordingFetcher(client, timeout=0.01, variable="MIXMONITOR_FILENAME")

        await fetcher.fetch("SIP/trunk-01")

        assert client.sent[0][1]["Variable"] == "MIXMONITOR_FILENAME"
