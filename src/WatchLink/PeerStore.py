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
PeerStore - durable identity of the last watch we connected to

Stored as JSON under an engine-owned namespace key so the file can be shared
with other application settings.
"""

import json
import os
import tempfile

import RNS

from WatchLink.config import DEFAULT_STORAGE_DIR


class PeerIdentity:
    """Transport address of the peer plus its optional display name."""

    def __init__(self, address, display_name=None):
        self.address = address
        self.display_name = display_name

    @property
    def label(self):
        return self.display_name or self.address

    def __eq__(self, other):
        if not isinstance(other, PeerIdentity):
            return NotImplemented
        return self.address == other.address and self.display_name == other.display_name

    def __repr__(self):
        return f"PeerIdentity({self.address}, {self.display_name})"


class PeerStore:
    """
    JSON-file store for the last known peer.

    File layout::

        {"watchlink.peer": {"address": "AA:BB:...", "name": "S3 Watch"}}
    """

    NAMESPACE = "watchlink.peer"
    FILENAME = "peer.json"

    def __init__(self, storage_path=None):
        if storage_path is None:
            storage_path = DEFAULT_STORAGE_DIR
        self.storage_path = os.path.expanduser(storage_path)
        self.path = os.path.join(self.storage_path, PeerStore.FILENAME)

    def _read_all(self):
        if not os.path.isfile(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            RNS.log(f"{self} could not read {self.path}: {e}", RNS.LOG_WARNING)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self):
        """
        Return the persisted identity.

        Returns:
            PeerIdentity or None if nothing (valid) was saved
        """
        entry = self._read_all().get(PeerStore.NAMESPACE)
        if not isinstance(entry, dict) or not entry.get("address"):
            return None
        return PeerIdentity(entry["address"], entry.get("name"))

    def save(self, identity):
        """Persist ``identity``, replacing the previous one atomically."""
        data = self._read_all()
        data[PeerStore.NAMESPACE] = {"address": identity.address, "name": identity.display_name}

        os.makedirs(self.storage_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_path, prefix=".peer-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        RNS.log(f"{self} saved {identity.label} ({identity.address})", RNS.LOG_DEBUG)

    def __str__(self):
        return "PeerStore"
