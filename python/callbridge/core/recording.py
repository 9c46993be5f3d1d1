"""
Recording Metadata Fetcher.

Asks the PBX for a channel's recording path with a GetVar action over the
manager connection and waits for the reply carrying the same ActionID.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING
from uuid import uuid4

from ..errors import RecordingFetchError, TransportError
from .outcome import RecordingStatus

if TYPE_CHECKING:
    from ..ami.client import AMIClient
    from ..ami.parser import EventBlock

logger = logging.getLogger("callbridge.recording")


@dataclass(frozen=True)
class RecordingResult:
    status: RecordingStatus
    path: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def available(cls, path: str) -> "RecordingResult":
        return cls(RecordingStatus.AVAILABLE, path=path)

    @classmethod
    def unavailable(cls, reason: str) -> "RecordingResult":
        return cls(RecordingStatus.UNAVAILABLE, reason=reason)


def result_from_reply(block: "EventBlock") -> Optional[RecordingResult]:
    """Interpret a GetVar reply; None when the block is not a final answer."""
    response = (block.response or "").lower()
    if response == "error":
        return RecordingResult.unavailable(block.get("Message") or "not found")

    if "Value" in block or response == "success":
        path = (block.get("Value") or "").strip()
        if path:
            return RecordingResult.available(path)
        return RecordingResult.unavailable("empty value")

    return None


class RecordingFetcher:
    """One correlated GetVar exchange per call, bounded by a timeout."""

    def __init__(
        self,
        client: "AMIClient",
        timeout: float = 5.0,
        variable: str = "RECORDED_FILE",
    ):
        self.client = client
        self.timeout = timeout
        self.variable = variable

    async def fetch(self, channel_id: str) -> RecordingResult:
        """
        Resolve the recording path for ``channel_id``.

        Raises:
            RecordingFetchError: The request could not be written
        """
        action_id = f"getrecording_{uuid4().hex}"
        reply: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_block(block: "EventBlock") -> None:
            if reply.done() or block.action_id != action_id:
                return
            result = result_from_reply(block)
            if result is not None:
                reply.set_result(result)

        self.client.add_listener(on_block)
        try:
            await self.client.send_action("GetVar", {
                "ActionID": action_id,
                "Channel": channel_id,
                "Variable": self.variable,
            })
            result = await asyncio.wait_for(reply, timeout=self.timeout)
        except TransportError as e:
            raise RecordingFetchError(f"GetVar for {channel_id} not sent: {e}", {"channel": channel_id}) from e
        except asyncio.TimeoutError:
            logger.warning(f"No GetVar reply for {channel_id} within {self.timeout:.0f}s")
            result = RecordingResult.unavailable("timeout")
        finally:
            self.client.remove_listener(on_block)

        logger.info(f"Recording for {channel_id}: {result.status.value} {result.path or result.reason}")
        return result
