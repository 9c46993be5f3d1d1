"""Tests for the manager-interface stream parser."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))

from callbridge.ami.parser import AMIStreamParser, EventBlock, parse_block, parse_line


class TestParseLine:
    """Test single line parsing."""

    def test_key_value(self):
        assert parse_line("Event: Hangup") == ("Event", "Hangup")

    def test_value_with_colon(self):
        """Only the first colon separates key and value."""
        assert parse_line("Channel: SIP/host:5060-01") == ("Channel", "SIP/host:5060-01")

    def test_empty_value(self):
        assert parse_line("CallerIDNum:") == ("CallerIDNum", "")

    def test_no_colon(self):
        assert parse_line("Asterisk Call Manager/5.0.1") is None


class TestEventBlock:
    """Test EventBlock lookups."""

    def test_case_insensitive_lookup(self):
        block = parse_block("Event: Newchannel\nChannel: SIP/100-1\nUniqueid: 42.1")

        assert block.event == "Newchannel"
        assert block.get("channel") == "SIP/100-1"
        assert block.unique_id == "42.1"
        assert "UNIQUEID" in block

    def test_first_value_wins(self):
        block = EventBlock([("Exten", "100"), ("Exten", "200")])
        assert block.get("Exten") == "100"

    def test_unknown_values_are_absent(self):
        """Empty and <unknown> values read as None through value()."""
        block = EventBlock([("Channel", "<unknown>"), ("Uniqueid", "")])

        assert block.channel is None
        assert block.unique_id is None
        assert block.get("Channel") == "<unknown>"

    def test_response_block(self):
        block = parse_block("Response: Success\r\nActionID: abc\r\nValue: /tmp/a.wav")

        assert block.event is None
        assert block.response == "Success"
        assert block.action_id == "abc"

    def test_lines_keep_order(self):
        block = parse_block("Event: Newstate\nCallerIDNum: 1\nExten: 2\nCallerIDNum: 3")
        assert [k for k, _ in block.lines] == ["Event", "CallerIDNum", "Exten", "CallerIDNum"]


class TestAMIStreamParser:
    """Test incremental stream parsing."""

    def test_single_block(self, newchannel_chunk):
        parser = AMIStreamParser()
        blocks = parser.feed(newchannel_chunk)

        assert len(blocks) == 1
        assert blocks[0].event == "Newchannel"
        assert blocks[0].channel == "SIP/trunk-00000001"
        assert parser.pending == ""

    def test_partial_line_across_chunks(self):
        """A line split between reads is reassembled before parsing."""
        parser = AMIStreamParser()

        assert parser.feed(b"Event: Hang") == []
        assert parser.feed(b"up\r\nChannel: SIP/1") == []
        blocks = parser.feed(b"00-1\r\nCause: 16\r\n\r\n")

        assert len(blocks) == 1
        assert blocks[0].event == "Hangup"
        assert blocks[0].channel == "SIP/100-1"
        assert blocks[0].get("Cause") == "16"

    def test_terminator_split_across_chunks(self):
        parser = AMIStreamParser()

        assert parser.feed(b"Event: Answer\r\nChannel: SIP/1-1\r\n") == []
        blocks = parser.feed(b"\r\n")

        assert len(blocks) == 1

    def test_multiple_blocks_in_one_chunk(self):
        parser = AMIStreamParser()
        blocks = parser.feed(
            b"Event: Newchannel\r\nChannel: A\r\n\r\n"
            b"Event: Hangup\r\nChannel: A\r\n\r\n"
            b"Event: Newch"
        )

        assert [b.event for b in blocks] == ["Newchannel", "Hangup"]
        assert parser.pending == "Event: Newch"

    def test_bare_lf_line_endings(self):
        parser = AMIStreamParser()
        blocks = parser.feed("Event: Answer\nChannel: SIP/1-1\n\n")

        assert len(blocks) == 1
        assert blocks[0].event == "Answer"

    def test_banner_without_terminator_is_buffered(self):
        """The greeting line has no blank line after it and stays pending."""
        parser = AMIStreamParser()
        assert parser.feed(b"Asterisk Call Manager/5.0.1\r\n") == []

    def test_empty_blocks_skipped(self):
        parser = AMIStreamParser()
        assert parser.feed(b"\r\n\r\n\r\n\r\n") == []

    def test_overflow_forces_flush(self):
        """A stream without terminators is flushed once the limit is passed."""
        parser = AMIStreamParser(max_buffer=64)
        chunk = "".join(f"Key{i}: value\n" for i in range(10))

        blocks = parser.feed(chunk)

        assert parser.overflow_count == 1
        assert len(blocks) == 1
        assert len(blocks[0].lines) == 10
        assert parser.pending == ""

    def test_reset(self):
        parser = AMIStreamParser()
        parser.feed(b"Event: Partial")
        parser.reset()

        assert parser.pending == ""
