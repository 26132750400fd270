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
OutboundQueue - time-bounded FIFO of frames waiting for the link

Frames produced while the watch is unreachable wait here until the link is
ready again. Anything older than the TTL is stale (a notification from a
minute ago is no longer worth showing) and is dropped silently.
"""

import threading
import time
from collections import deque

import RNS


class PendingFrame:
    """A frame payload and the time it was queued."""

    __slots__ = ("payload", "enqueued_at")

    def __init__(self, payload, enqueued_at):
        self.payload = payload
        self.enqueued_at = enqueued_at

    def age(self, now=None):
        if now is None:
            now = time.monotonic()
        return now - self.enqueued_at

    def __repr__(self):
        return f"PendingFrame({len(self.payload)} bytes, enqueued_at={self.enqueued_at:.3f})"


class OutboundQueue:
    """
    Thread-safe FIFO with head-side expiry.

    Entries are appended in time order, so only the head can be the oldest
    entry; purging walks forward from the head while entries are expired.
    Every query purges first, so an entry queued at T is never visible at
    T + ttl or later.
    """

    DEFAULT_TTL = 60.0

    def __init__(self, ttl=DEFAULT_TTL):
        self.ttl = float(ttl)
        self._entries = deque()
        self._lock = threading.Lock()
        self.expired_count = 0

    def _purge_locked(self, now):
        dropped = 0
        while self._entries and now - self._entries[0].enqueued_at >= self.ttl:
            self._entries.popleft()
            dropped += 1
        if dropped:
            self.expired_count += dropped
            RNS.log(f"{self} dropped {dropped} expired frame(s)", RNS.LOG_DEBUG)
        return dropped

    def purge_expired(self, now=None):
        """Drop expired head entries. Returns the number dropped."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            return self._purge_locked(now)

    def enqueue(self, payload, now=None):
        """
        Purge stale entries, then append a frame.

        Args:
            payload: Frame body (bytes, without terminator)
            now: Override the enqueue timestamp (monotonic clock seconds)

        Returns:
            PendingFrame: The queued entry
        """
        if now is None:
            now = time.monotonic()
        entry = PendingFrame(bytes(payload), now)
        with self._lock:
            self._purge_locked(now)
            self._entries.append(entry)
            depth = len(self._entries)
        RNS.log(f"{self} queued {len(payload)} byte frame (depth {depth})", RNS.LOG_DEBUG)
        return entry

    def peek(self, now=None):
        """Purge, then return the head entry without removing it (or None)."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            self._purge_locked(now)
            return self._entries[0] if self._entries else None

    def remove(self, entry):
        """
        Remove ``entry`` after it was transmitted.

        Only the head is ever transmitted, but the head may have expired and
        been purged in the meantime; in that case nothing is removed.

        Returns:
            bool: True if the entry was still queued
        """
        with self._lock:
            if self._entries and self._entries[0] is entry:
                self._entries.popleft()
                return True
            try:
                self._entries.remove(entry)
                return True
            except ValueError:
                return False

    def snapshot(self, now=None):
        """Current (non-expired) payloads in FIFO order."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            self._purge_locked(now)
            return [entry.payload for entry in self._entries]

    def is_empty(self, now=None):
        return len(self.snapshot(now)) == 0

    def __len__(self):
        return len(self.snapshot())

    def __str__(self):
        return "OutboundQueue"
