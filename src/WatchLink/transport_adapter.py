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
Transport abstraction for the watch link.

The engine never talks to a Bluetooth stack directly. A ``TransportAdapter``
performs GATT operations for exactly one peer and reports their outcome as
``TransportEvent`` values through a single ``on_event`` callback, which the
engine consumes in one transition function.

Adapter methods return immediately; results arrive as events. The one
exception is ``write``, which returns once the stack accepted (or rejected)
the chunk.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

# Client Characteristic Configuration descriptor
CCC_DESCRIPTOR_UUID = "00002902-0000-1000-8000-00805f9b34fb"

# GATT characteristic property names (as reported by BlueZ/bleak)
PROPERTY_NOTIFY = "notify"
PROPERTY_WRITE = "write"
PROPERTY_WRITE_NO_RESPONSE = "write-without-response"


class EventKind(Enum):
    CONNECTED = "connected"
    CONNECTION_FAILED = "connection_failed"
    PERMISSION_DENIED = "permission_denied"
    DISCONNECTED = "disconnected"
    SERVICES_DISCOVERED = "services_discovered"
    NOTIFICATIONS_ENABLED = "notifications_enabled"
    MTU_CHANGED = "mtu_changed"
    DATA_RECEIVED = "data_received"
    WRITE_COMPLETE = "write_complete"


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    properties: FrozenSet[str] = frozenset()
    descriptors: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class TransportEvent:
    """
    One transport callback, as a value.

    Fields are populated per kind:
    - CONNECTED: ``name`` (peer-reported name, may be None)
    - CONNECTION_FAILED / PERMISSION_DENIED: ``status``, ``message``
    - SERVICES_DISCOVERED: ``success``, ``services``
      (service uuid -> {char uuid -> GattCharacteristic})
    - NOTIFICATIONS_ENABLED / WRITE_COMPLETE: ``success``, ``status``
    - MTU_CHANGED: ``success``, ``mtu`` (None if the stack did not say)
    - DATA_RECEIVED: ``data``
    """

    kind: EventKind
    address: str
    success: bool = True
    status: Optional[int] = None
    message: Optional[str] = None
    name: Optional[str] = None
    mtu: Optional[int] = None
    data: bytes = b""
    services: Dict[str, Dict[str, GattCharacteristic]] = field(default_factory=dict)


class TransportAdapter(ABC):
    """
    Capability interface for a single-peer GATT client.

    Implementations must emit a DISCONNECTED event after every
    ``disconnect()`` call, including when the link was never up, and must
    not emit events after ``close()`` for the closed session.
    """

    def __init__(self):
        self.on_event: Optional[Callable[[TransportEvent], None]] = None

    def _emit(self, event):
        if self.on_event:
            self.on_event(event)

    @abstractmethod
    def is_available(self) -> bool:
        """True when an adapter is present and powered."""

    @abstractmethod
    def connect(self, address: str):
        """Start connecting to ``address`` (CONNECTED / CONNECTION_FAILED follow)."""

    @abstractmethod
    def discover_services(self):
        """Resolve the peer's GATT table (SERVICES_DISCOVERED follows)."""

    @abstractmethod
    def enable_notifications(self, char_uuid: str):
        """Subscribe to ``char_uuid`` (NOTIFICATIONS_ENABLED follows)."""

    @abstractmethod
    def request_mtu(self, mtu: int):
        """Ask for a larger ATT MTU (MTU_CHANGED follows)."""

    @abstractmethod
    def write(self, char_uuid: str, data: bytes, with_response: bool) -> bool:
        """Write one chunk. Returns True if the stack accepted it."""

    @abstractmethod
    def disconnect(self):
        """Drop the link (DISCONNECTED follows)."""

    @abstractmethod
    def close(self):
        """Release all handles for the current session without further events."""
