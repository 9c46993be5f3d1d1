"""Asterisk Manager Interface transport and stream parsing."""
from .parser import AMIStreamParser, EventBlock, parse_block
from .client import AMIClient

__all__ = ["AMIStreamParser", "EventBlock", "parse_block", "AMIClient"]
