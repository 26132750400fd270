# MIT License
#
# Copyright (c) 2025 WatchLink Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
LinkFraming - line framing and MTU chunking for the watch UART link

Wire format:
- One JSON object per frame, UTF-8, terminated by a single newline.
- Frames are cut into chunks that fit one ATT write. There is no per-chunk
  header: the transport delivers writes in order within a connection, so
  the receiver simply concatenates and splits on newlines.
"""

import json
from datetime import datetime

from WatchLink.errors import WriteFailed

FRAME_TERMINATOR = b"\n"


def frame_payload(payload):
    """Append the line terminator to a payload."""
    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(f"Frame payload must be bytes, got {type(payload).__name__}")
    return bytes(payload) + FRAME_TERMINATOR


def encode_json(obj):
    """Compact JSON encoding used for every outbound control frame."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def local_timestamp(now=None):
    """Local date-time in ISO-8601 with seconds precision."""
    if now is None:
        now = datetime.now()
    return now.isoformat(timespec="seconds")


def build_datetime_frame(now=None):
    return encode_json({"datetime": local_timestamp(now)})


def build_ack_frame(event):
    return encode_json({"ack": event})


def build_status_frame():
    return encode_json({"status": "read"})


def build_notification_frame(app_id, title, message, now=None):
    """Envelope for a forwarded phone notification."""
    return encode_json({
        "notification": local_timestamp(now),
        "app": app_id,
        "title": title,
        "message": message,
    })


class LineFragmenter:
    """
    Splits newline-terminated frames into ATT-sized chunks.

    The usable chunk size is the negotiated MTU minus the ATT header, but
    never below 20 bytes (the payload of the minimum 23-byte BLE MTU).
    """

    ATT_OVERHEAD = 3
    MIN_CHUNK_SIZE = 20

    def __init__(self, mtu=23, overhead=ATT_OVERHEAD):
        self.mtu = int(mtu)
        self.overhead = int(overhead)

    @property
    def chunk_size(self):
        return max(LineFragmenter.MIN_CHUNK_SIZE, self.mtu - self.overhead)

    def fragment_frame(self, payload):
        """
        Frame a payload and cut it into chunks.

        Args:
            payload: Frame body without terminator (bytes)

        Returns:
            list: Chunks in transmission order. Their concatenation is
            exactly ``payload + b"\\n"``.
        """
        framed = frame_payload(payload)
        size = self.chunk_size
        return [framed[offset:offset + size] for offset in range(0, len(framed), size)]

    def get_chunk_count(self, payload_size):
        """Number of chunks needed for a payload of ``payload_size`` bytes."""
        framed_size = payload_size + len(FRAME_TERMINATOR)
        return (framed_size + self.chunk_size - 1) // self.chunk_size

    def transmit(self, payload, write):
        """
        Deliver a payload chunk by chunk through ``write``.

        ``write(chunk)`` returns True when the transport accepted the chunk.
        The first rejected chunk aborts the rest of the frame.

        Returns:
            int: Number of chunks written

        Raises:
            WriteFailed: If any chunk was rejected
        """
        chunks = self.fragment_frame(payload)
        for i, chunk in enumerate(chunks):
            if not write(chunk):
                raise WriteFailed(
                    f"Failed to send data: chunk {i+1}/{len(chunks)} rejected "
                    f"(mtu={self.mtu} chunk_size={self.chunk_size})",
                    chunk_index=i,
                    chunk_count=len(chunks),
                )
        return len(chunks)


class LineReassembler:
    """
    Rebuilds newline-delimited lines from notification packets.

    Packets may split a line anywhere, including inside a multi-byte UTF-8
    sequence, so bytes are accumulated and only complete lines are decoded.
    """

    def __init__(self):
        self.buffer = bytearray()
        self.lines_received = 0
        self.bytes_received = 0

    def receive(self, data):
        """
        Append received bytes and extract every complete line.

        Args:
            data: Bytes from one notification

        Returns:
            list: Decoded lines (terminator and trailing CR stripped)
        """
        self.buffer.extend(data)
        self.bytes_received += len(data)

        lines = []
        newline_index = self.buffer.find(FRAME_TERMINATOR)
        while newline_index != -1:
            raw = bytes(self.buffer[:newline_index])
            del self.buffer[:newline_index + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(raw.decode("utf-8", errors="replace"))
            newline_index = self.buffer.find(FRAME_TERMINATOR)

        self.lines_received += len(lines)
        return lines

    @property
    def pending_bytes(self):
        return len(self.buffer)

    def reset(self):
        """Drop any partial line (used when a session is torn down)."""
        self.buffer.clear()

    def get_statistics(self):
        return {
            "lines_received": self.lines_received,
            "bytes_received": self.bytes_received,
            "pending_bytes": self.pending_bytes,
        }
