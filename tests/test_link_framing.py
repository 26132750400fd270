#!/usr/bin/env python3
"""
Unit tests for line framing, MTU chunking and line reassembly
"""

import json
from datetime import datetime

import pytest

from WatchLink.errors import WriteFailed
from WatchLink.LinkFraming import (
    LineFragmenter,
    LineReassembler,
    build_ack_frame,
    build_datetime_frame,
    build_notification_frame,
    build_status_frame,
    encode_json,
    frame_payload,
)


class TestControlFrames:
    """Outbound control frames are compact JSON objects"""

    def test_datetime_frame(self):
        frame = build_datetime_frame(datetime(2025, 3, 14, 9, 26, 53, 589793))
        assert frame == b'{"datetime":"2025-03-14T09:26:53"}'

    def test_ack_frame(self):
        assert build_ack_frame("datetime") == b'{"ack":"datetime"}'

    def test_status_frame(self):
        assert build_status_frame() == b'{"status":"read"}'

    def test_notification_frame(self):
        frame = build_notification_frame("com.chat", "Alice", "Lunch?", now=datetime(2025, 1, 2, 3, 4, 5))
        assert json.loads(frame) == {
            "notification": "2025-01-02T03:04:05",
            "app": "com.chat",
            "title": "Alice",
            "message": "Lunch?",
        }

    def test_non_ascii_is_utf8(self):
        """Text is sent as UTF-8, not as \\u escapes"""
        frame = encode_json({"title": "Café"})
        assert frame == '{"title":"Café"}'.encode("utf-8")

    def test_frame_payload_appends_single_newline(self):
        assert frame_payload(b'{"a":1}') == b'{"a":1}\n'

    def test_frame_payload_rejects_text(self):
        with pytest.raises(TypeError):
            frame_payload('{"a":1}')


class TestLineFragmenter:
    """Chunking to the negotiated MTU"""

    def test_default_mtu_chunk_size(self):
        assert LineFragmenter(mtu=23).chunk_size == 20

    def test_small_mtu_clamped_to_minimum(self):
        """Chunks never shrink below 20 bytes even if a tiny MTU is reported"""
        assert LineFragmenter(mtu=10).chunk_size == 20

    def test_negotiated_mtu(self):
        assert LineFragmenter(mtu=128).chunk_size == 125

    def test_small_frame_single_chunk(self, sample_frames):
        chunks = LineFragmenter(mtu=23).fragment_frame(sample_frames['small'])
        assert chunks == [sample_frames['small'] + b"\n"]

    def test_terminator_fits_exactly(self, sample_frames):
        chunks = LineFragmenter(mtu=23).fragment_frame(sample_frames['exact'])
        assert len(chunks) == 1
        assert len(chunks[0]) == 20

    def test_terminator_spills_into_own_chunk(self):
        chunks = LineFragmenter(mtu=23).fragment_frame(b"X" * 20)
        assert chunks == [b"X" * 20, b"\n"]

    def test_large_frame_chunks(self, sample_frames):
        payload = sample_frames['large']
        fragmenter = LineFragmenter(mtu=23)
        chunks = fragmenter.fragment_frame(payload)

        assert len(chunks) == fragmenter.get_chunk_count(len(payload))
        for chunk in chunks[:-1]:
            assert len(chunk) == 20
        assert 0 < len(chunks[-1]) <= 20
        assert b"".join(chunks) == payload + b"\n"

    def test_empty_frame_is_just_terminator(self, sample_frames):
        assert LineFragmenter().fragment_frame(sample_frames['empty']) == [b"\n"]

    def test_chunk_count(self):
        fragmenter = LineFragmenter(mtu=128)
        assert fragmenter.get_chunk_count(0) == 1
        assert fragmenter.get_chunk_count(124) == 1
        assert fragmenter.get_chunk_count(125) == 2
        assert fragmenter.get_chunk_count(249) == 2

    def test_transmit_writes_in_order(self):
        written = []
        count = LineFragmenter(mtu=23).transmit(b"A" * 45, lambda chunk: written.append(chunk) or True)

        assert count == 3
        assert written == [b"A" * 20, b"A" * 20, b"A" * 5 + b"\n"]

    def test_transmit_aborts_on_rejected_chunk(self):
        """Remaining chunks are not attempted once one is rejected"""
        attempts = []

        def write(chunk):
            attempts.append(chunk)
            return len(attempts) < 2

        with pytest.raises(WriteFailed) as excinfo:
            LineFragmenter(mtu=23).transmit(b"B" * 100, write)

        assert len(attempts) == 2
        assert excinfo.value.chunk_index == 1
        assert excinfo.value.chunk_count == 6
        assert str(excinfo.value).startswith("Failed to send data")


class TestLineReassembler:
    """Rebuilding lines from notification packets"""

    def test_single_complete_line(self):
        reassembler = LineReassembler()
        assert reassembler.receive(b'{"battery":80}\n') == ['{"battery":80}']

    def test_line_split_across_packets(self):
        reassembler = LineReassembler()
        assert reassembler.receive(b'{"batt') == []
        assert reassembler.receive(b'ery":8') == []
        assert reassembler.receive(b'0}\n') == ['{"battery":80}']
        assert reassembler.pending_bytes == 0

    def test_multiple_lines_in_one_packet(self):
        reassembler = LineReassembler()
        lines = reassembler.receive(b'{"a":1}\n{"b":2}\n{"c"')
        assert lines == ['{"a":1}', '{"b":2}']
        assert reassembler.pending_bytes == 4

    def test_crlf_stripped(self):
        assert LineReassembler().receive(b"hello\r\n") == ["hello"]

    def test_empty_line(self):
        assert LineReassembler().receive(b"\n") == [""]

    def test_multibyte_sequence_split(self):
        """A UTF-8 character cut between packets decodes intact"""
        encoded = "é\n".encode("utf-8")
        reassembler = LineReassembler()
        assert reassembler.receive(encoded[:1]) == []
        assert reassembler.receive(encoded[1:]) == ["é"]

    def test_invalid_utf8_replaced(self):
        lines = LineReassembler().receive(b"ok\xff\n")
        assert lines == ["ok�"]

    def test_no_line_length_bound(self):
        reassembler = LineReassembler()
        for _ in range(100):
            reassembler.receive(b"x" * 100)
        assert reassembler.receive(b"\n") == ["x" * 10000]

    def test_reset_drops_partial_line(self):
        reassembler = LineReassembler()
        reassembler.receive(b"partial")
        reassembler.reset()
        assert reassembler.receive(b"next\n") == ["next"]

    def test_statistics(self):
        reassembler = LineReassembler()
        reassembler.receive(b"a\nb\nc")
        stats = reassembler.get_statistics()
        assert stats == {"lines_received": 2, "bytes_received": 5, "pending_bytes": 1}

    def test_fragmenter_output_reassembles(self):
        fragmenter = LineFragmenter(mtu=23)
        reassembler = LineReassembler()
        payload = encode_json({"message": "m" * 90})

        lines = []
        for chunk in fragmenter.fragment_frame(payload):
            lines.extend(reassembler.receive(chunk))

        assert lines == [payload.decode("utf-8")]
