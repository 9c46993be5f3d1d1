"""Pytest configuration and fixtures."""

import os
import sys
import pytest

# Add python directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))


def pytest_configure(config):
    """Configure pytest."""
    os.environ['CALLBRIDGE_LOG_LEVEL'] = 'WARNING'
    # Register asyncio marker
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def newchannel_chunk():
    """Newchannel block as the PBX sends it, CRLF-terminated."""
    return (
        b"Event: Newchannel\r\n"
        b"Channel: SIP/trunk-00000001\r\n"
        b"Uniqueid: 1700000000.1\r\n"
        b"CallerIDNum: 5551234\r\n"
        b"Exten: 777\r\n"
        b"\r\n"
    )


@pytest.fixture
def getvar_reply():
    """Build a GetVar success reply for an ActionID."""
    def build(action_id: str, value: str = "/var/spool/asterisk/monitor/rec.wav") -> bytes:
        return (
            f"Response: Success\r\n"
            f"ActionID: {action_id}\r\n"
            f"Variable: RECORDED_FILE\r\n"
            f"Value: {value}\r\n"
            f"\r\n"
        ).encode()
    return build
