"""
Asterisk Manager Interface client.

Maintains one TCP session to the PBX with:
- Login handshake on every (re)connect
- Block dispatch to the correlation engine and to temporary listeners
- Unbounded reconnection with fixed backoff
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
from uuid import uuid4

from ..errors import TransportError
from .parser import AMIStreamParser, EventBlock

if TYPE_CHECKING:
    from ..metrics import MetricsCollector

logger = logging.getLogger("callbridge.ami")

BlockHandler = Callable[[List[EventBlock]], Awaitable[None]]
BlockListener = Callable[[EventBlock], None]

READ_SIZE = 4096


def format_action(action: str, params: Optional[Dict[str, str]] = None) -> bytes:
    """Encode an action as a CRLF block terminated by a blank line."""
    parts = [f"Action: {action}\r\n"]
    if params:
        parts.extend(f"{k}: {v}\r\n" for k, v in params.items())
    parts.append("\r\n")
    return "".join(parts).encode()


class AMIClient:
    """
    Streaming manager-interface client.

    Every complete block read from the socket is first offered to the
    registered listeners (request/response exchanges such as GetVar), then
    handed to ``on_blocks`` as one batch per read.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        secret: str,
        on_blocks: Optional[BlockHandler] = None,
        error_backoff: float = 10.0,
        close_backoff: float = 5.0,
        login_timeout: float = 10.0,
        max_buffer: int = 65536,
        metrics: Optional["MetricsCollector"] = None,
    ):
        """
        Initialize the client.

        Args:
            host: PBX manager host
            port: PBX manager port
            username: Manager login
            secret: Manager secret
            on_blocks: Coroutine receiving each read's complete blocks
            error_backoff: Seconds to wait after a connection error
            close_backoff: Seconds to wait after the PBX closed the session
            login_timeout: Seconds to wait for the login response
            max_buffer: Parser buffer limit
            metrics: Optional metrics collector
        """
        self.host = host
        self.port = port
        self.username = username
        self.secret = secret
        self.on_blocks = on_blocks
        self.error_backoff = error_backoff
        self.close_backoff = close_backoff
        self.login_timeout = login_timeout
        self.metrics = metrics

        self._parser = AMIStreamParser(max_buffer=max_buffer)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._listeners: List[BlockListener] = []
        self._running = False
        self._logged_in = False
        self._task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._connect_count = 0

    @property
    def connected(self) -> bool:
        """True while a logged-in session is open."""
        return self._logged_in and self._writer is not None

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: BlockListener) -> None:
        """Register a callback offered every incoming block."""
        self._listeners.append(listener)

    def remove_listener(self, listener: BlockListener) -> None:
        """Deregister a callback; unknown callbacks are ignored."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def send_action(self, action: str, params: Optional[Dict[str, str]] = None) -> None:
        """
        Write an action to the PBX.

        Raises:
            TransportError: No open session or the write failed
        """
        if not self._writer:
            raise TransportError(f"Cannot send {action}: not connected")

        async with self._write_lock:
            try:
                self._writer.write(format_action(action, params))
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Send {action} failed: {e}") from e

        logger.debug(f"Sent action {action} {params or {}}")

    async def connect(self) -> None:
        """Open the TCP session and log in."""
        logger.info(f"Connecting to AMI at {self.host}:{self.port}")
        try:
            self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            raise TransportError(f"Connection to {self.host}:{self.port} failed: {e}") from e

        self._parser.reset()
        await self._login()
        self._connect_count += 1
        if self._connect_count > 1 and self.metrics:
            self.metrics.ami_reconnected()
        logger.info(f"Connected & authenticated to AMI at {self.host}:{self.port}")

    async def _login(self) -> None:
        action_id = f"login_{uuid4().hex[:12]}"
        await self.send_action(
            "Login",
            {"Username": self.username, "Secret": self.secret, "ActionID": action_id},
        )

        while True:
            try:
                data = await asyncio.wait_for(self._reader.read(READ_SIZE), timeout=self.login_timeout)
            except asyncio.TimeoutError as e:
                raise TransportError("Timed out waiting for login response") from e

            if not data:
                raise TransportError("Connection closed during login")

            blocks = self._parser.feed(data)
            for index, block in enumerate(blocks):
                if not block.response or block.action_id not in (None, action_id):
                    continue
                if block.response.lower() != "success":
                    raise TransportError(f"Login rejected: {block.get('Message', 'unknown reason')}")
                self._logged_in = True
                rest = blocks[index + 1:]
                if rest:
                    await self._dispatch(rest)
                return

    async def _read_loop(self) -> None:
        """Read until the PBX closes the session."""
        while self._running:
            data = await self._reader.read(READ_SIZE)
            if not data:
                return
            blocks = self._parser.feed(data)
            if blocks:
                await self._dispatch(blocks)

    async def _dispatch(self, blocks: List[EventBlock]) -> None:
        for block in blocks:
            for listener in list(self._listeners):
                try:
                    listener(block)
                except Exception as e:
                    logger.error(f"AMI listener failed: {e}", exc_info=e)

        if self.on_blocks:
            try:
                await self.on_blocks(blocks)
            except Exception as e:
                logger.error(f"Block handler failed: {e}", exc_info=e)

    async def feed(self, chunk) -> None:
        """Push a raw chunk through parsing and dispatch (replay and tests)."""
        blocks = self._parser.feed(chunk)
        if blocks:
            await self._dispatch(blocks)

    async def run(self) -> None:
        """Connect, read, and reconnect until stopped."""
        self._running = True
        while self._running:
            delay = self.close_backoff
            try:
                await self.connect()
                await self._read_loop()
                if self._running:
                    logger.warning(
                        f"AMI connection closed. Reconnecting in {self.close_backoff:.0f}s..."
                    )
            except asyncio.CancelledError:
                raise
            except (TransportError, OSError, asyncio.IncompleteReadError) as e:
                delay = self.error_backoff
                logger.error(f"AMI connection error: {e}. Reconnecting in {self.error_backoff:.0f}s...")
            finally:
                await self._close_transport()

            if self._running:
                await asyncio.sleep(delay)

    async def start(self) -> None:
        """Start the connection loop in the background."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self.run())

    async def _close_transport(self) -> None:
        self._logged_in = False
        writer, self._writer, self._reader = self._writer, None, None
        if writer:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def stop(self) -> None:
        """Log off and stop reconnecting."""
        self._running = False

        if self.connected:
            try:
                await self.send_action("Logoff")
            except TransportError as e:
                logger.debug(f"Logoff skipped: {e}")

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._close_transport()
        self._listeners.clear()
        logger.info("AMI client stopped")

    def is_healthy(self) -> bool:
        """Health probe: logged in and running."""
        return self._running and self.connected
