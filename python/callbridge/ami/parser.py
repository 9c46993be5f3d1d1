"""
Event Line Parser.

The manager interface delivers ``key: value`` lines separated by CRLF, with a
blank line closing each block. TCP reads do not align with either boundary,
so the parser keeps the unterminated tail of the stream between reads and
only releases complete blocks.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("callbridge.ami.parser")

LINE_TERMINATOR = "\r\n"

# Values the PBX uses when a field carries no information
_EMPTY_VALUES = {"", "<unknown>"}


@dataclass
class EventBlock:
    """One manager-interface block in arrival order."""

    lines: List[Tuple[str, str]] = field(default_factory=list)

    def __post_init__(self):
        self._fields: Dict[str, str] = {}
        for key, value in self.lines:
            self._fields.setdefault(key.lower(), value)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """First value for ``key`` (case-insensitive)."""
        return self._fields.get(key.lower(), default)

    def value(self, key: str) -> Optional[str]:
        """Like :meth:`get` but maps empty and ``<unknown>`` values to None."""
        raw = self.get(key)
        if raw is None or raw.strip() in _EMPTY_VALUES:
            return None
        return raw

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._fields

    @property
    def event(self) -> Optional[str]:
        return self.get("Event")

    @property
    def response(self) -> Optional[str]:
        return self.get("Response")

    @property
    def action_id(self) -> Optional[str]:
        return self.get("ActionID")

    @property
    def channel(self) -> Optional[str]:
        return self.value("Channel")

    @property
    def unique_id(self) -> Optional[str]:
        return self.value("Uniqueid")

    def to_dict(self) -> Dict[str, str]:
        return {key: value for key, value in self.lines}


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    """Split one ``key: value`` line. Lines without a colon yield None."""
    key, sep, value = line.partition(":")
    if not sep or not key.strip():
        return None
    return key.strip(), value.strip()


def parse_block(text: str) -> EventBlock:
    """Parse the lines of a single block (no blank-line separators)."""
    pairs = []
    for raw in text.split("\n"):
        parsed = parse_line(raw.rstrip("\r"))
        if parsed:
            pairs.append(parsed)
    return EventBlock(pairs)


class AMIStreamParser:
    """
    Incremental parser for the manager-interface stream.

    Features:
    - Partial trailing lines are kept until the next chunk completes them
    - Blocks are released only once their blank-line terminator arrives
    - Tolerates bare LF line endings
    - Forced flush when the buffer exceeds ``max_buffer`` characters
    """

    def __init__(self, max_buffer: int = 65536):
        self.max_buffer = max_buffer
        self._buffer = ""
        self._overflow_count = 0

    @property
    def pending(self) -> str:
        """Buffered text not yet released as a block."""
        return self._buffer

    @property
    def overflow_count(self) -> int:
        return self._overflow_count

    def feed(self, chunk) -> List[EventBlock]:
        """
        Add a raw chunk and return every block it completes.

        Args:
            chunk: bytes or str read from the stream

        Returns:
            Complete blocks in arrival order (possibly empty)
        """
        if isinstance(chunk, (bytes, bytearray)):
            chunk = chunk.decode("utf-8", errors="ignore")

        self._buffer += chunk.replace("\r\n", "\n")

        blocks: List[EventBlock] = []
        while True:
            end = self._buffer.find("\n\n")
            if end < 0:
                break
            raw_block = self._buffer[:end]
            self._buffer = self._buffer[end + 2:]
            block = parse_block(raw_block)
            if block.lines:
                blocks.append(block)

        if len(self._buffer) > self.max_buffer:
            self._overflow_count += 1
            logger.warning(
                f"No block terminator within {self.max_buffer} chars, flushing buffer"
            )
            blocks.extend(self.flush())

        return blocks

    def flush(self) -> List[EventBlock]:
        """Release whatever complete lines are buffered as one block."""
        text, sep, tail = self._buffer.rpartition("\n")
        if not sep:
            return []
        self._buffer = tail
        block = parse_block(text)
        return [block] if block.lines else []

    def reset(self) -> None:
        """Drop buffered state (used after a reconnect)."""
        self._buffer = ""
